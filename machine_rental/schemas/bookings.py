from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

BookingStatusLiteral = Literal[
    "pending_renter_approval",
    "approved_by_renter",
    "rejected_by_renter",
    "sent_back_to_client",
    "canceled_by_client",
]


class CreateBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    templateID: int
    requestedCount: int = 1
    startTime: datetime
    endTime: datetime
    label: Optional[str] = Field(default=None, max_length=255)


class UpdateBookingStatusDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newStatus: BookingStatusLiteral
    message: Optional[str] = Field(default=None, max_length=1000)


class BookingDecisionDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: Optional[str] = Field(default=None, max_length=1000)


class SendMessageDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: str = Field(min_length=1, max_length=1000)


class CancelBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = Field(default=None, max_length=1000)


class CreatePaymentIntentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bookingID: int


class ConfirmPaymentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    paymentIntentID: str
    succeeded: bool = True
