# ridehub/main.py
import logging
import os
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine

from . import __version__, config
from . import schemas as s
from .auth import Authenticator, TokenVerifier, build_authenticator, get_identity, require_identity
from .cleanup import Maintenance
from .database import Store, init_db, make_engine
from .documents import DocumentDesk
from .errors import LedgerError, Unauthorized
from .identity import Identity, require_admin
from .messaging import MessagePipeline
from .models import OfficialRouteStatus, User
from .orders import OrderLedger
from .pricing import DistanceEstimator, QuoteService, RegionResolver
from .promotion import BlobStore, LocalBlobStore, Scheduler, ThreadScheduler, TwoPhaseWriter
from .seats import SeatLedger
from .subscriptions import SubscriptionManager, feeds_for
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

APP_VERSION = __version__

FEED_SCHEMAS = {
    "users": s.UserRead,
    "orders": s.OrderRead,
    "official_routes": s.RouteRead,
    "wallet_logs": s.WalletLogRead,
    "vouchers": s.VoucherRead,
    "platform_wallet": s.TreasuryRead,
    "conversations": s.ConversationRead,
    "messages": s.MessageRead,
    "tickets": s.TicketRead,
    "driver_documents": s.DocumentRead,
}


def _read(data: Optional[UploadFile]) -> Optional[bytes]:
    if data is None:
        return None
    raw = data.file.read()
    return raw or None


def create_app(
    engine: Optional[Engine] = None,
    blobs: Optional[BlobStore] = None,
    schedule: Optional[Scheduler] = None,
    authenticator: Optional[Authenticator] = None,
    verifier: Optional[TokenVerifier] = None,
    allow_dev_header: Optional[bool] = None,
    resolver: Optional[RegionResolver] = None,
    estimator: Optional[DistanceEstimator] = None,
) -> FastAPI:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="RideHub API", version=APP_VERSION)

    # CORS
    allow_origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # uploaded chat images and driver documents
    os.makedirs(config.STATIC_DIR, exist_ok=True)
    app.mount("/static", StaticFiles(directory=config.STATIC_DIR), name="static")

    engine = engine or make_engine()
    subscriptions = SubscriptionManager(engine)
    store = Store(engine, publisher=subscriptions)
    uploads = None
    if schedule is None:
        schedule = uploads = ThreadScheduler()
    writer = TwoPhaseWriter(store, blobs or LocalBlobStore(config.STATIC_DIR), schedule)

    app.state.store = store
    app.state.subscriptions = subscriptions
    app.state.uploads = uploads
    app.state.authenticator = authenticator or build_authenticator(
        store, verifier=verifier, allow_dev_header=allow_dev_header
    )
    quotes = QuoteService(store, config.PricingConfig.from_env(), resolver, estimator)
    seats = SeatLedger(store)
    orders = OrderLedger(store)
    wallet = WalletLedger(store)
    messages = MessagePipeline(store, writer)
    documents = DocumentDesk(store, writer)
    maintenance = Maintenance(store)

    @app.on_event("startup")
    def _startup():
        init_db(engine)
        logger.info("ridehub %s ready on %s", APP_VERSION, engine.url.render_as_string(hide_password=True))

    @app.on_event("shutdown")
    def _shutdown():
        if uploads is not None:
            uploads.shutdown()

    @app.exception_handler(LedgerError)
    async def _ledger_error(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ---------------- Health ----------------
    @app.get("/api/health")
    def health():
        return {"status": "ok", "version": APP_VERSION}

    # ---------------- Users -----------------
    @app.get("/api/users/me", response_model=s.UserRead)
    def me(identity: Identity = Depends(require_identity)):
        user = store.read(lambda session: session.get(User, identity.user_id))
        if not user:
            raise HTTPException(404, "User not found")
        return s.UserRead.model_validate(user)

    # ---------------- Pricing ---------------
    @app.post("/api/quotes", response_model=s.QuoteRead)
    def quote(payload: s.QuoteRequest):
        return s.QuoteRead.model_validate(quotes.quote(payload.pickup, payload.dropoff, payload.date))

    # ------------ Official routes -----------
    @app.get("/api/routes", response_model=List[s.RouteRead])
    def list_routes(status: Optional[List[OfficialRouteStatus]] = Query(None)):
        return [s.RouteRead.model_validate(r) for r in seats.list_routes(status)]

    @app.post("/api/routes", response_model=s.RouteRead, status_code=201)
    def create_route(payload: s.RouteCreate, identity: Optional[Identity] = Depends(get_identity)):
        route = seats.create_route(
            identity,
            payload.pickup,
            payload.dropoff,
            payload.date,
            payload.price_per_seat,
            total_seats=payload.total_seats,
            charter_price=payload.charter_price,
            admin_note=payload.admin_note,
        )
        return s.RouteRead.model_validate(route)

    @app.get("/api/routes/{route_id}", response_model=s.RouteRead)
    def get_route(route_id: str):
        return s.RouteRead.model_validate(seats.get_route(route_id))

    @app.post("/api/routes/{route_id}/join", response_model=s.OrderRead, status_code=201)
    def join_route(route_id: str, payload: s.JoinRequest, identity: Optional[Identity] = Depends(get_identity)):
        return s.OrderRead.model_validate(seats.join(identity, route_id, payload.pax_count))

    @app.post("/api/routes/{route_id}/advance", response_model=s.RouteRead)
    def advance_route(route_id: str, payload: s.RouteAdvance, identity: Optional[Identity] = Depends(get_identity)):
        return s.RouteRead.model_validate(seats.advance(identity, route_id, payload.status, payload.driver_id))

    # ---------------- Orders ----------------
    @app.get("/api/orders", response_model=List[s.OrderRead])
    def list_orders(identity: Optional[Identity] = Depends(get_identity)):
        return [s.OrderRead.model_validate(o) for o in orders.visible_to(identity)]

    @app.post("/api/orders", response_model=s.OrderRead, status_code=201)
    def create_order(payload: s.OrderCreate, identity: Optional[Identity] = Depends(get_identity)):
        order = orders.create(
            identity,
            payload.pickup,
            payload.dropoff,
            payload.price,
            payload.platform_fee,
            passengers_count=payload.passengers_count,
            date=payload.date,
            order_type=payload.type,
            notes=payload.notes,
        )
        return s.OrderRead.model_validate(order)

    @app.get("/api/orders/{order_id}", response_model=s.OrderRead)
    def get_order(order_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.OrderRead.model_validate(orders.get(identity, order_id))

    @app.post("/api/orders/{order_id}/accept", response_model=s.OrderRead)
    def accept_order(order_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.OrderRead.model_validate(orders.accept(identity, order_id))

    @app.post("/api/orders/{order_id}/start", response_model=s.OrderRead)
    def start_order(order_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.OrderRead.model_validate(orders.start(identity, order_id))

    @app.post("/api/orders/{order_id}/complete", response_model=s.OrderRead)
    def complete_order(order_id: str, identity: Identity = Depends(require_identity)):
        return s.OrderRead.model_validate(orders.complete(order_id, identity))

    @app.post("/api/orders/{order_id}/cancel", response_model=s.OrderRead)
    def cancel_order(order_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.OrderRead.model_validate(orders.cancel(identity, order_id))

    @app.post("/api/orders/{order_id}/leave", response_model=s.OrderRead)
    def leave_route(order_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.OrderRead.model_validate(seats.leave(identity, order_id))

    # ---------------- Wallet ----------------
    @app.get("/api/wallet/treasury", response_model=s.TreasuryRead)
    def treasury(identity: Optional[Identity] = Depends(get_identity)):
        require_admin(identity)
        return s.TreasuryRead(total_points=wallet.treasury_balance())

    @app.post("/api/wallet/mint", response_model=s.WalletLogRead)
    def mint(payload: s.AmountRequest, identity: Optional[Identity] = Depends(get_identity)):
        log = wallet.mint(identity, payload.amount)
        if log is None:
            raise Unauthorized("only the super admin can mint points")
        return s.WalletLogRead.model_validate(log)

    @app.post("/api/wallet/grant", response_model=s.WalletLogRead)
    def grant(payload: s.PointsMove, identity: Optional[Identity] = Depends(get_identity)):
        log = wallet.grant(identity, payload.target_user_id, payload.amount, payload.note)
        return s.WalletLogRead.model_validate(log)

    @app.post("/api/wallet/transfer", response_model=s.WalletLogRead)
    def transfer(payload: s.PointsMove, identity: Optional[Identity] = Depends(get_identity)):
        log = wallet.transfer(identity, payload.target_user_id, payload.amount, payload.note)
        return s.WalletLogRead.model_validate(log)

    @app.post("/api/wallet/purchase", response_model=s.WalletLogRead)
    def purchase(payload: s.AmountRequest, identity: Optional[Identity] = Depends(get_identity)):
        return s.WalletLogRead.model_validate(wallet.purchase(identity, payload.amount))

    @app.get("/api/wallet/logs", response_model=List[s.WalletLogRead])
    def wallet_logs(identity: Optional[Identity] = Depends(get_identity)):
        return [s.WalletLogRead.model_validate(x) for x in wallet.logs(identity)]

    @app.post("/api/vouchers", response_model=s.VoucherRead, status_code=201)
    def issue_voucher(payload: s.VoucherIssue, identity: Optional[Identity] = Depends(get_identity)):
        voucher = wallet.issue_voucher(
            identity,
            payload.user_id,
            payload.type,
            payload.amount,
            payload.title,
            days_valid=payload.days_valid,
            description=payload.description,
        )
        return s.VoucherRead.model_validate(voucher)

    @app.get("/api/vouchers", response_model=List[s.VoucherRead])
    def my_vouchers(identity: Identity = Depends(require_identity)):
        return [s.VoucherRead.model_validate(v) for v in wallet.list_vouchers(identity.user_id)]

    # --------------- Messaging --------------
    @app.get("/api/conversations", response_model=List[s.ConversationRead])
    def list_conversations(identity: Optional[Identity] = Depends(get_identity)):
        return [s.ConversationRead.model_validate(c) for c in messages.list_conversations(identity)]

    @app.post("/api/conversations", response_model=s.ConversationRead)
    def open_conversation(payload: s.ConversationOpen, identity: Optional[Identity] = Depends(get_identity)):
        conv = messages.open_conversation(identity, payload.partner_id, payload.order_id)
        return s.ConversationRead.model_validate(conv)

    @app.get("/api/conversations/{conversation_id}/messages", response_model=List[s.MessageRead])
    def list_messages(conversation_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return [s.MessageRead.model_validate(m) for m in messages.list_messages(identity, conversation_id)]

    @app.post("/api/conversations/{conversation_id}/messages", response_model=s.MessageRead, status_code=201)
    def send_message(
        conversation_id: str,
        content: str = Form(""),
        ticket_id: Optional[str] = Form(None, alias="ticketId"),
        image: Optional[UploadFile] = File(None),
        identity: Optional[Identity] = Depends(get_identity),
    ):
        msg = messages.send(identity, conversation_id, content, _read(image), ticket_id)
        return s.MessageRead.model_validate(msg)

    @app.post("/api/conversations/{conversation_id}/read")
    def mark_read(conversation_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return {"updated": messages.mark_read(identity, conversation_id)}

    @app.post("/api/broadcasts", response_model=s.MessageRead, status_code=201)
    def broadcast(payload: s.BroadcastRequest, identity: Optional[Identity] = Depends(get_identity)):
        return s.MessageRead.model_validate(messages.broadcast(identity, payload.content, payload.title))

    # ---------------- Tickets ---------------
    @app.get("/api/tickets", response_model=List[s.TicketRead])
    def list_tickets(identity: Optional[Identity] = Depends(get_identity)):
        return [s.TicketRead.model_validate(t) for t in messages.list_tickets(identity)]

    @app.post("/api/tickets", response_model=s.TicketRead, status_code=201)
    def create_ticket(payload: s.TicketCreate, identity: Optional[Identity] = Depends(get_identity)):
        ticket = messages.create_ticket(identity, payload.subject, payload.category, payload.order_id)
        return s.TicketRead.model_validate(ticket)

    @app.post("/api/tickets/{ticket_id}/claim", response_model=s.TicketRead)
    def claim_ticket(ticket_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.TicketRead.model_validate(messages.claim_ticket(identity, ticket_id))

    @app.post("/api/tickets/{ticket_id}/resolve", response_model=s.TicketRead)
    def resolve_ticket(ticket_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.TicketRead.model_validate(messages.resolve_ticket(identity, ticket_id))

    # ------------ Driver documents ----------
    @app.post("/api/documents", response_model=s.DocumentRead, status_code=201)
    def submit_document(
        doc_type: str = Form(..., alias="docType"),
        number: Optional[str] = Form(None),
        expiry_date: Optional[str] = Form(None, alias="expiryDate"),
        image: Optional[UploadFile] = File(None),
        identity: Optional[Identity] = Depends(get_identity),
    ):
        doc = documents.submit(identity, doc_type, _read(image), number, expiry_date)
        return s.DocumentRead.model_validate(doc)

    @app.get("/api/users/{user_id}/documents", response_model=List[s.DocumentRead])
    def list_documents(user_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return [s.DocumentRead.model_validate(d) for d in documents.list_for(identity, user_id)]

    @app.post("/api/users/{user_id}/documents/{doc_type}/review", response_model=s.DocumentRead)
    def review_document(
        user_id: str,
        doc_type: str,
        payload: s.DocumentReview,
        identity: Optional[Identity] = Depends(get_identity),
    ):
        doc = documents.review(identity, user_id, doc_type, payload.status, payload.reason)
        return s.DocumentRead.model_validate(doc)

    @app.post("/api/drivers/{user_id}/approve", response_model=s.UserRead)
    def approve_driver(user_id: str, identity: Optional[Identity] = Depends(get_identity)):
        return s.UserRead.model_validate(documents.approve_driver(identity, user_id))

    @app.post("/api/drivers/{user_id}/reject", response_model=s.UserRead)
    def reject_driver(user_id: str, payload: s.DriverReject, identity: Optional[Identity] = Depends(get_identity)):
        return s.UserRead.model_validate(documents.reject_driver(identity, user_id, payload.reason))

    # ----------------- Feeds ----------------
    @app.get("/api/feeds")
    def feeds(identity: Optional[Identity] = Depends(get_identity)) -> Dict[str, list]:
        out: Dict[str, list] = {}
        for name, descriptor in feeds_for(identity).items():
            schema = FEED_SCHEMAS[descriptor.collection]
            rows = subscriptions.snapshot(descriptor)
            out[name] = [schema.model_validate(r).model_dump(mode="json", by_alias=True) for r in rows]
        return out

    # ----------------- Admin ----------------
    @app.get("/api/admin/ghosts", response_model=List[s.UserRead])
    def ghost_accounts(identity: Optional[Identity] = Depends(get_identity)):
        require_admin(identity)
        return [s.UserRead.model_validate(u) for u in maintenance.find_ghost_accounts()]

    @app.post("/api/admin/cleanup", response_model=s.CleanupReportRead)
    def cleanup(identity: Optional[Identity] = Depends(get_identity)):
        return s.CleanupReportRead.model_validate(maintenance.run_cleanup(identity))

    return app


app = create_app()
