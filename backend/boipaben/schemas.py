from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, HttpUrl, field_validator


def _coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


class BookBase(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    author_name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1, max_length=100)
    price: float = Field(ge=0)
    description: str | None = None
    image_url: str | None = None

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _coerce_float(value)


class BookCreate(BookBase):
    image_url: HttpUrl

    @field_validator("title", "author_name", "category", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class BookUpdate(BaseModel):
    """Editable listing fields; sale state is deliberately absent."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    author_name: str | None = Field(default=None, min_length=1, max_length=200)
    category: str | None = Field(default=None, min_length=1, max_length=100)
    price: float | None = Field(default=None, ge=0)
    description: str | None = None
    image_url: HttpUrl | None = None

    model_config = {"extra": "forbid"}

    def changes(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_unset=True)
        if payload.get("image_url") is not None:
            payload["image_url"] = str(payload["image_url"])
        return payload


class Book(BookBase):
    book_id: str
    owner_email: str
    availability: str
    sold_at: datetime | None = None
    visible_until: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BookList(BaseModel):
    total: int
    items: list[Book]


class Suggestion(BaseModel):
    type: Literal["book", "author", "category"]
    title: str
    subtitle: str | None = None
    image_url: str | None = None


class SuggestionList(BaseModel):
    suggestions: list[Suggestion]


class CartItemCreate(BaseModel):
    book_id: str = Field(min_length=1)


class CartItem(BaseModel):
    cart_item_id: str
    book_id: str
    title: str
    author_name: str
    image_url: str | None = None
    price: float
    category: str | None = None
    added_at: datetime
    availability: str = "unknown"

    model_config = {"from_attributes": True}

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _coerce_float(value)


class CartCount(BaseModel):
    count: int


class ShippingAddress(BaseModel):
    street_address: str = Field(min_length=1)
    city_town: str = Field(min_length=1)
    district: str = Field(min_length=1)
    contact_number: str = Field(min_length=1)
    postal_code: str | None = None


class CheckoutRequest(BaseModel):
    cart_item_ids: list[str] = Field(min_length=1)


class CashOnDeliveryRequest(CheckoutRequest):
    address: ShippingAddress


class CheckoutSession(BaseModel):
    session_id: str
    url: str | None = None


class CardPaymentConfirmation(BaseModel):
    session_id: str = Field(min_length=1)


class OrderLine(BaseModel):
    book_id: str
    title: str
    author_name: str
    price: float


class SaleReceipt(BaseModel):
    order_id: str
    book_ids: list[str]
    amount: float
    payment_method: str
    recorded_at: datetime
    already_processed: bool = False


class Order(BaseModel):
    order_id: str
    email: str
    amount: float
    items: list[OrderLine] = Field(default_factory=list)
    shipping_address: dict[str, Any] | None = None
    payment_method: str
    status: str
    external_ref: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _coerce_float(value)


class UnavailableItem(BaseModel):
    book_id: str
    message: str


class ConflictDetail(BaseModel):
    detail: str
    unavailable: list[UnavailableItem] = Field(default_factory=list)


class CleanupSummary(BaseModel):
    ran_at: datetime
    cutoff: datetime
    hidden: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.hidden is not None
