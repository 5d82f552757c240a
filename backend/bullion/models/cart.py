from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, EmailStr, Field, field_validator, model_validator

# finalPrice may drift from basePrice * (1 + markup%) by at most one cent.
PRICE_TOLERANCE = Decimal("0.01")


class AuthHints(BaseModel):
    """Identity fields a client may send alongside its bearer token.

    They are only ever compared against the verified identity, never trusted.
    """

    authType: Optional[str] = None
    email: Optional[EmailStr] = None
    userId: Optional[str] = None


class LinePricing(BaseModel):
    basePrice: Decimal = Field(ge=0)
    markupPercentage: Decimal = Field(ge=0)
    markupAmount: Decimal = Field(ge=0, validation_alias=AliasChoices("markupAmount", "markup"))
    finalPrice: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def _final_price_matches_markup(self):
        expected = self.basePrice * (1 + self.markupPercentage / Decimal(100))
        if abs(self.finalPrice - expected) > PRICE_TOLERANCE:
            raise ValueError(
                f"finalPrice {self.finalPrice} does not match basePrice {self.basePrice} "
                f"with {self.markupPercentage}% markup"
            )
        return self


class CartLineIn(BaseModel):
    itemId: str = Field(validation_alias=AliasChoices("itemId", "inventoryId", "id"))
    sku: Optional[str] = None
    name: str = Field(min_length=1)
    quantity: int = Field(1, gt=0)
    pricing: LinePricing
    metalSymbol: Optional[str] = None
    metalOz: Optional[float] = None
    manufacturer: Optional[str] = None
    image: Optional[str] = None

    @field_validator("itemId", mode="before")
    @classmethod
    def _item_id_as_string(cls, value):
        # Supplier inventory ids are numeric upstream but strings in the cart.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("itemId")
    @classmethod
    def _item_id_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("itemId is required")
        return value


class AddToCartRequest(AuthHints):
    item: CartLineIn


class RemoveFromCartRequest(AuthHints):
    itemId: str

    @field_validator("itemId", mode="before")
    @classmethod
    def _item_id_as_string(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class UpdateCartRequest(RemoveFromCartRequest):
    quantity: int
