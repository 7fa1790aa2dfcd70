"""ridehub: transactional core of a ride-hailing platform."""

__version__ = "0.6.0"
