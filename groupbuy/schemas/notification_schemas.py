from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from groupbuy.db.models import SystemCommand


class QueueEntryDraft(BaseModel):
    """Everything needed to enqueue one outbound notification."""

    recipient: str = Field(..., min_length=1, max_length=320)
    subject: str = ""
    body: str = ""
    system_command: Optional[SystemCommand] = None
    general_order_id: Optional[str] = None
    command_variant: Optional[str] = None
    template_code: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None
    priority: int = 5
    max_attempts: Optional[int] = Field(
        default=None, description="Defaults to QUEUE_MAX_ATTEMPTS"
    )
    scheduled_for: Optional[datetime] = None

    @field_validator("max_attempts")
    def max_attempts_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class Attachment(BaseModel):
    filename: str
    content: bytes
    content_type: str = "application/pdf"


class OutboundMessage(BaseModel):
    """A concrete message ready for the transport."""

    recipient: str
    subject: str
    body: str
    attachments: List[Attachment] = Field(default_factory=list)


class DispatchResult(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0
    messages_sent: int = 0
    messages_failed: int = 0


class OrderSummaryStatistics(BaseModel):
    participant_count: int = 0
    line_item_count: int = 0
    distinct_product_count: int = 0
    total_amount: str = "0.00"
    participants: List[Dict[str, str]] = Field(default_factory=list)


class SupplierLine(BaseModel):
    product_name: str
    quantity: int = 0
    unit_price: str = "0.00"
    total_price: str = "0.00"


class SupplierGroup(BaseModel):
    """Ordered products of one supplier within a general order."""

    supplier_name: str
    supplier_contact: str = ""
    total_quantity: int = 0
    total_amount: str = "0.00"
    lines: List[SupplierLine] = Field(default_factory=list)
