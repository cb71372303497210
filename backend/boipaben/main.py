from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from starlette.concurrency import run_in_threadpool

from checkout.client import PaymentGatewayClient, PaymentGatewayError
from checkout.service import CheckoutService, PaymentNotCompleted, WebhookVerificationError

from . import schemas
from .core.config import Settings, get_settings, settings
from .core.security import InvalidToken, TokenExpired, decode_access_token
from .db import SessionLocal, get_db, init_db
from .domain.errors import (
    BookNotFound,
    CartError,
    NotOwner,
    PersistentFailure,
    SaleConflict,
    SoldBookLocked,
    TransientStoreFailure,
)
from .domain.models import Identity, SaleResult
from .domain.visibility import OwnerView, ViewingContext, VisibilityPolicy
from .services.book_service import BookQuery, BookService, context_for
from .services.cart_service import CartService
from .services.cleanup import CleanupScheduler

app = FastAPI(title="BoiPaben API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables and start the sold-book cleanup timer."""

    init_db()
    current = get_settings()
    if current.cleanup_enabled:
        scheduler = CleanupScheduler(
            SessionLocal,
            VisibilityPolicy.from_settings(current),
            interval=current.cleanup_interval,
        )
        scheduler.start()
        app.state.cleanup_scheduler = scheduler


@app.on_event("shutdown")
def on_shutdown() -> None:
    scheduler = getattr(app.state, "cleanup_scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        app.state.cleanup_scheduler = None


# ----------------------------------------------------------------------
# Error mapping


@app.exception_handler(SaleConflict)
def _sale_conflict_handler(request: Request, exc: SaleConflict) -> JSONResponse:
    detail = schemas.ConflictDetail(
        detail="Some books are no longer available",
        unavailable=[
            schemas.UnavailableItem(book_id=book_id, message=f"Book {book_id} is no longer available")
            for book_id in exc.book_ids
        ],
    )
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=detail.model_dump())


@app.exception_handler(BookNotFound)
def _book_not_found_handler(request: Request, exc: BookNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(SoldBookLocked)
def _sold_book_locked_handler(request: Request, exc: SoldBookLocked) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(NotOwner)
def _not_owner_handler(request: Request, exc: NotOwner) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(CartError)
def _cart_error_handler(request: Request, exc: CartError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(PaymentNotCompleted)
def _payment_not_completed_handler(request: Request, exc: PaymentNotCompleted) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(WebhookVerificationError)
def _webhook_error_handler(request: Request, exc: WebhookVerificationError) -> JSONResponse:
    logger.warning("Rejected payment webhook: {}", exc)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(PaymentGatewayError)
def _gateway_error_handler(request: Request, exc: PaymentGatewayError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


@app.exception_handler(TransientStoreFailure)
def _transient_failure_handler(request: Request, exc: TransientStoreFailure) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Temporarily unable to record the order, please retry"},
    )


@app.exception_handler(PersistentFailure)
def _persistent_failure_handler(request: Request, exc: PersistentFailure) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ----------------------------------------------------------------------
# Dependencies


_bearer = HTTPBearer(auto_error=False)


def _settings() -> Settings:
    return get_settings()


def _clock() -> datetime:
    """Request time; every visibility decision in a request uses this value."""

    return datetime.now(timezone.utc)


def _policy(current: Settings = Depends(_settings)) -> VisibilityPolicy:
    return VisibilityPolicy.from_settings(current)


def _book_service(db=Depends(get_db), policy: VisibilityPolicy = Depends(_policy)) -> BookService:
    """Provide the book service wired with a SQLAlchemy session."""

    return BookService(db, policy)


def _cart_service(db=Depends(get_db)) -> CartService:
    return CartService(db)


def _checkout_service(db=Depends(get_db), current: Settings = Depends(_settings)) -> CheckoutService:
    def client_factory() -> PaymentGatewayClient:
        return PaymentGatewayClient(
            base_url=str(current.payment_api_base),
            secret_key=current.payment_secret_key,
        )

    return CheckoutService(db, current, client_factory=client_factory)


def optional_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    current: Settings = Depends(_settings),
) -> Identity | None:
    """Identity when a valid bearer token is present; anonymous otherwise."""

    if credentials is None:
        return None
    try:
        return decode_access_token(credentials.credentials, current.auth_token_secret)
    except InvalidToken:
        return None


def current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    current: Settings = Depends(_settings),
) -> Identity:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return decode_access_token(credentials.credentials, current.auth_token_secret)
    except TokenExpired:
        raise HTTPException(status_code=401, detail="Token expired")
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid token")


def _viewing_context(identity: Identity | None = Depends(optional_identity)) -> ViewingContext:
    return context_for(identity)


def _book_query(
    *,
    category: Annotated[str | None, Query(description="Category filter (case-insensitive)")] = None,
    min_price: Annotated[float | None, Query(ge=0)] = None,
    max_price: Annotated[float | None, Query(ge=0)] = None,
    sort: Annotated[
        str,
        Query(description="Field to sort by", pattern="^(created_at|price|title)$"),
    ] = "created_at",
    order: Annotated[
        str,
        Query(description="Sort order (asc|desc)", pattern="^(asc|desc)$", min_length=3, max_length=4),
    ] = "desc",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> BookQuery:
    """Normalize shared book listing query parameters."""

    return BookQuery(
        category=category,
        min_price=min_price,
        max_price=max_price,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )


def _receipt(result: SaleResult) -> schemas.SaleReceipt:
    return schemas.SaleReceipt(
        order_id=result.order_id,
        book_ids=list(result.book_ids),
        amount=result.amount,
        payment_method=result.payment_method,
        recorded_at=result.recorded_at,
        already_processed=result.already_processed,
    )


# ----------------------------------------------------------------------
# Routes


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


@app.get("/books", response_model=schemas.BookList, tags=["books"])
def list_books(
    *,
    query: BookQuery = Depends(_book_query),
    context: ViewingContext = Depends(_viewing_context),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    """List available books plus books sold within the visibility window."""

    result = service.list_visible_books(context, now, query)
    return schemas.BookList(total=result.total, items=list(result.books))


@app.get("/books/latest", response_model=schemas.BookList, tags=["books"])
def latest_books(
    *,
    limit: Annotated[int, Query(ge=1, le=50)] = 8,
    context: ViewingContext = Depends(_viewing_context),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    result = service.latest_books(context, now, limit=limit)
    return schemas.BookList(total=result.total, items=list(result.books))


@app.get("/books/search", response_model=schemas.BookList, tags=["books"])
def search_books(
    *,
    q: Annotated[str, Query(min_length=1, description="Matches title, author, category or description")],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    context: ViewingContext = Depends(_viewing_context),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    result = service.search_books(context, now, q, limit=limit)
    return schemas.BookList(total=result.total, items=list(result.books))


@app.get("/books/suggestions", response_model=schemas.SuggestionList, tags=["books"])
def book_suggestions(
    *,
    q: Annotated[str, Query(description="Partial title, author or category")] = "",
    limit: Annotated[int, Query(ge=1, le=20)] = 8,
    context: ViewingContext = Depends(_viewing_context),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    return schemas.SuggestionList(suggestions=service.suggestions(context, now, q, limit=limit))


@app.get("/books/category/{category}", response_model=schemas.BookList, tags=["books"])
def books_by_category(
    category: str,
    *,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    context: ViewingContext = Depends(_viewing_context),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    result = service.list_visible_books(
        context, now, BookQuery(category=category, limit=limit, offset=offset)
    )
    return schemas.BookList(total=result.total, items=list(result.books))


@app.get("/books/{book_id}/similar", response_model=schemas.BookList, tags=["books"])
def similar_books(
    book_id: str,
    *,
    limit: Annotated[int, Query(ge=1, le=20)] = 4,
    context: ViewingContext = Depends(_viewing_context),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    result = service.similar_books(book_id, context, now, limit=limit)
    if result is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return schemas.BookList(total=result.total, items=list(result.books))


@app.get("/books/{book_id}", response_model=schemas.Book, tags=["books"])
def get_book(
    book_id: str,
    *,
    identity: Identity | None = Depends(optional_identity),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    """Retrieve a single book; sellers can always open their own listings."""

    context = OwnerView(owner_email=identity.email) if identity else context_for(None)
    book = service.get_book(book_id, context, now)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


@app.get("/users/me/books", response_model=schemas.BookList, tags=["books"])
def my_books(
    *,
    identity: Identity = Depends(current_identity),
    now: datetime = Depends(_clock),
    service: BookService = Depends(_book_service),
):
    """All of the caller's listings, sold ones included regardless of age."""

    result = service.owner_books(identity, now)
    return schemas.BookList(total=result.total, items=list(result.books))


@app.post("/books", response_model=schemas.Book, status_code=201, tags=["books"])
def create_book(
    payload: schemas.BookCreate,
    *,
    identity: Identity = Depends(current_identity),
    service: BookService = Depends(_book_service),
):
    return service.create_book(identity, payload)


@app.patch("/books/{book_id}", response_model=schemas.Book, tags=["books"])
def update_book(
    book_id: str,
    payload: schemas.BookUpdate,
    *,
    identity: Identity = Depends(current_identity),
    service: BookService = Depends(_book_service),
):
    book = service.update_book(identity, book_id, payload)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


@app.delete("/books/{book_id}", status_code=204, tags=["books"])
def delete_book(
    book_id: str,
    *,
    identity: Identity = Depends(current_identity),
    service: BookService = Depends(_book_service),
) -> None:
    if not service.delete_book(identity, book_id):
        raise HTTPException(status_code=404, detail="Book not found")


@app.get("/cart", response_model=list[schemas.CartItem], tags=["cart"])
def list_cart(
    *,
    identity: Identity = Depends(current_identity),
    service: CartService = Depends(_cart_service),
):
    return service.list_items(identity)


@app.get("/cart/count", response_model=schemas.CartCount, tags=["cart"])
def cart_count(
    *,
    identity: Identity = Depends(current_identity),
    service: CartService = Depends(_cart_service),
):
    return schemas.CartCount(count=service.count_items(identity))


@app.post("/cart", response_model=schemas.CartItem, status_code=201, tags=["cart"])
def add_to_cart(
    payload: schemas.CartItemCreate,
    *,
    identity: Identity = Depends(current_identity),
    service: CartService = Depends(_cart_service),
):
    item = service.add_item(identity, payload.book_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return item


@app.delete("/cart/{cart_item_id}", status_code=204, tags=["cart"])
def remove_from_cart(
    cart_item_id: str,
    *,
    identity: Identity = Depends(current_identity),
    service: CartService = Depends(_cart_service),
) -> None:
    if not service.remove_item(identity, cart_item_id):
        raise HTTPException(status_code=404, detail="Cart item not found")


@app.delete("/cart", tags=["cart"])
def clear_cart(
    *,
    identity: Identity = Depends(current_identity),
    service: CartService = Depends(_cart_service),
) -> dict[str, int]:
    return {"removed": service.clear(identity)}


@app.post("/payments/checkout-session", response_model=schemas.CheckoutSession, tags=["payments"])
def create_checkout_session(
    payload: schemas.CheckoutRequest,
    *,
    identity: Identity = Depends(current_identity),
    service: CheckoutService = Depends(_checkout_service),
):
    return service.create_checkout_session(identity, payload.cart_item_ids)


@app.post("/payments/card/complete", response_model=schemas.SaleReceipt, tags=["payments"])
def complete_card_payment(
    payload: schemas.CardPaymentConfirmation,
    *,
    identity: Identity = Depends(current_identity),
    now: datetime = Depends(_clock),
    service: CheckoutService = Depends(_checkout_service),
):
    return _receipt(service.complete_card_payment(identity, payload.session_id, now))


@app.post("/payments/webhook", tags=["payments"])
async def payment_webhook(
    request: Request,
    *,
    stripe_signature: Annotated[str | None, Header()] = None,
    now: datetime = Depends(_clock),
    service: CheckoutService = Depends(_checkout_service),
) -> dict[str, object]:
    """Gateway callback; repeated deliveries of one session record one order."""

    payload = await request.body()
    result = await run_in_threadpool(service.handle_webhook, payload, stripe_signature, now)
    return {
        "received": True,
        "order_id": result.order_id if result else None,
        "already_processed": result.already_processed if result else False,
    }


@app.post(
    "/payments/cash-on-delivery",
    response_model=schemas.SaleReceipt,
    status_code=201,
    tags=["payments"],
)
def cash_on_delivery(
    payload: schemas.CashOnDeliveryRequest,
    *,
    identity: Identity = Depends(current_identity),
    now: datetime = Depends(_clock),
    service: CheckoutService = Depends(_checkout_service),
):
    return _receipt(
        service.cash_on_delivery(identity, payload.cart_item_ids, payload.address, now)
    )


@app.get("/payments/history", response_model=list[schemas.Order], tags=["payments"])
def payment_history(
    *,
    identity: Identity = Depends(current_identity),
    service: CheckoutService = Depends(_checkout_service),
):
    return service.payment_history(identity)
