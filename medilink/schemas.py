"""Request bodies for the JSON API. Field names follow the web client (camelCase)."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(_Body):
    type: Literal["subscription", "product"]
    tier: str | None = None
    period: str | None = None
    product_id: str | None = Field(default=None, alias="productId")
    quantity: int = Field(default=1, ge=1, le=100)


class SubscriptionAction(_Body):
    action: str


class NotificationUpdate(_Body):
    notification_id: str | None = Field(default=None, alias="notificationId")
    mark_all: bool = Field(default=False, alias="markAll")


class AddressCreate(_Body):
    address_line1: str = Field(alias="addressLine1", min_length=1, max_length=255)
    address_line2: str | None = Field(default=None, alias="addressLine2", max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(alias="postalCode", min_length=1, max_length=20)
    country: str = Field(min_length=1, max_length=100)
    is_default: bool = Field(default=False, alias="isDefault")


class AddressUpdate(_Body):
    address_id: str = Field(alias="addressId")
    address_line1: str | None = Field(default=None, alias="addressLine1", max_length=255)
    address_line2: str | None = Field(default=None, alias="addressLine2", max_length=255)
    city: str | None = Field(default=None, max_length=100)
    state: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, alias="postalCode", max_length=20)
    country: str | None = Field(default=None, max_length=100)
    is_default: bool | None = Field(default=None, alias="isDefault")


class AdminOrderUpdate(_Body):
    order_id: str = Field(alias="orderId")
    status: str | None = None
    tracking_number: str | None = Field(default=None, alias="trackingNumber")
    notes: str | None = None


class AdminUserUpdate(_Body):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = Field(default=None, min_length=3, max_length=255)
    is_admin: bool | None = Field(default=None, alias="isAdmin")
