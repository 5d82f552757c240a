from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from bullion.models.cart import AuthHints


class ShippingAddressIn(BaseModel):
    fullName: str = Field(min_length=1)
    streetAddress: str = Field(min_length=1)
    aptSuite: Optional[str] = None
    attention: Optional[str] = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zipCode: str = Field(min_length=1)
    country: str = "US"
    phone: Optional[str] = None


class CreateIntentRequest(AuthHints):
    shippingAddress: ShippingAddressIn
    paymentMethodType: str = "card"


class UpdateIntentRequest(AuthHints):
    paymentIntentId: str = Field(min_length=1)
    paymentMethodType: str = Field(min_length=1)
    # Only consulted when the intent's own metadata lacks the subtotal.
    subtotal: Optional[Decimal] = Field(None, ge=0)


class SyncStatusRequest(AuthHints):
    orderId: str = Field(min_length=1)
