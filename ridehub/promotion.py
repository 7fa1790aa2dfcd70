"""
Two-phase writes for records that carry an uploaded image.

Phase one commits the record with an inline preview so it is visible at
once. Phase two, scheduled in the background, uploads the reduced image to
blob storage and then records the outcome in a second transaction: the
permanent url on success, an error flag on failure. The preview is never
removed, so a failed upload still leaves something to show.
"""
from __future__ import annotations

import base64
import io
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, TypeVar

from PIL import Image, ImageOps, UnidentifiedImageError
from sqlmodel import Session

from . import config
from .database import Store
from .errors import BlobUploadError, InvalidAttachment

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], None]
Scheduler = Callable[[Job], None]


@dataclass(frozen=True)
class PreparedAsset:
    data: bytes
    preview: str
    content_type: str = "image/jpeg"


def prepare_image(raw: bytes, max_side: int, quality: int) -> PreparedAsset:
    """Shrink ``raw`` to fit ``max_side`` and re-encode it as JPEG.

    The returned preview is a data URI of the same bytes, small enough to
    store inline on the record.
    """
    if not raw:
        raise InvalidAttachment("empty attachment")
    try:
        with Image.open(io.BytesIO(raw)) as src:
            img = ImageOps.exif_transpose(src).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidAttachment(f"not a readable image: {exc}") from exc
    img.thumbnail((max_side, max_side))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    data = buf.getvalue()
    preview = "data:image/jpeg;base64," + base64.b64encode(data).decode("ascii")
    return PreparedAsset(data=data, preview=preview)


class BlobStore(Protocol):
    def upload(self, path: str, data: bytes, content_type: str) -> str: ...


class LocalBlobStore:
    """Writes blobs under the static directory served at ``/static``."""

    def __init__(self, root: Optional[str] = None, url_prefix: str = "/static") -> None:
        self.root = root or config.STATIC_DIR
        self.url_prefix = url_prefix.rstrip("/")

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = os.path.join(self.root, *path.split("/"))
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            raise BlobUploadError(f"could not store {path}: {exc}") from exc
        return f"{self.url_prefix}/{path}"


class ThreadScheduler:
    """Runs upload jobs on a small worker pool owned by the app."""

    def __init__(self, max_workers: int = 4) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ridehub-upload")

    def __call__(self, job: Job) -> None:
        self._pool.submit(job)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class TwoPhaseWriter:
    def __init__(self, store: Store, blobs: BlobStore, schedule: Optional[Scheduler] = None) -> None:
        self.store = store
        self.blobs = blobs
        self.schedule = schedule or ThreadScheduler()

    def write(
        self,
        durable: Callable[[Session], T],
        asset: Optional[PreparedAsset],
        path_for: Callable[[T], str],
        on_promoted: Callable[[Session, T, str], None],
        on_failed: Callable[[Session, T], None],
    ) -> T:
        """Commit ``durable`` now; upload ``asset`` later.

        Without an asset this is a plain transaction.
        """
        record = self.store.run_transaction(durable)
        if asset is not None:
            path = path_for(record)
            self.schedule(lambda: self._promote(record, asset, path, on_promoted, on_failed))
        return record

    def _promote(self, record, asset: PreparedAsset, path: str, on_promoted, on_failed) -> None:
        try:
            url = self.blobs.upload(path, asset.data, asset.content_type)
        except Exception as exc:
            logger.warning("upload of %s failed: %s", path, exc)
            self._reconcile(path, lambda s: on_failed(s, record))
            return
        logger.info("uploaded %s -> %s", path, url)
        self._reconcile(path, lambda s: on_promoted(s, record, url))

    def _reconcile(self, path: str, fn: Callable[[Session], None]) -> None:
        try:
            self.store.run_transaction(fn)
        except Exception:
            # nobody is waiting on a background job; the record keeps its preview
            logger.exception("could not record upload outcome for %s", path)
