import datetime as dt
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookingRequest(CamelModel):
    resource_id: UUID = Field(..., description="Time slot id")
    quantity: int = Field(..., gt=0, description="Number of guests")
    date: dt.date

class PurchaseLineIn(CamelModel):
    resource_id: UUID = Field(..., description="Ticket tier id")
    quantity: int = Field(..., gt=0)

class TicketPurchaseRequest(CamelModel):
    resource_id: Optional[UUID] = None
    quantity: Optional[int] = Field(None, gt=0)
    items: Optional[List[PurchaseLineIn]] = None

    @model_validator(mode="after")
    def one_shape(self):
        if self.items:
            if self.resource_id is not None:
                raise ValueError("Send either resourceId/quantity or items, not both")
        elif self.resource_id is None or self.quantity is None:
            raise ValueError("resourceId and quantity, or items, are required")
        return self

    def lines(self) -> List[PurchaseLineIn]:
        if self.items:
            return self.items
        return [PurchaseLineIn(resource_id=self.resource_id, quantity=self.quantity)]

class LeadUnlockRequest(CamelModel):
    resource_id: UUID = Field(..., description="Lead id")
    quantity: int = Field(1, gt=0)


class PurchaseResponse(CamelModel):
    order_id: str
    amount: int
    currency: str
    checkout_key: str
    internal_reservation_id: UUID
    checkout_mode: str
    reservation_status: str
    restaurant_name: Optional[str] = None
    event_name: Optional[str] = None
    lead_name: Optional[str] = None


class WebhookAck(BaseModel):
    status: str

class ErrorResponse(BaseModel):
    error: str
    detail: str
