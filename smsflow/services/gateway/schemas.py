"""Request models for provider callbacks."""

from pydantic import BaseModel, ConfigDict, Field


class DeliveryReceiptRequest(BaseModel):
    """Payload accepted by `POST /webhooks/provider/dlr`."""

    message_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    error_code: str | None = None
    error_message: str | None = None


class InboundMessageRequest(BaseModel):
    """Payload accepted by `POST /webhooks/provider/inbound`."""

    model_config = ConfigDict(populate_by_name=True)

    from_phone: str = Field(alias="from", min_length=1)
    text: str = ""
    timestamp: str | None = None
