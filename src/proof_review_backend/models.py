from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProofStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class UploadState(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    INVALID = "invalid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Dimensions(BaseModel):
    width: float
    height: float


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class OrderEvent(BaseModel):
    timestamp: datetime
    message: str
    proof_id: Optional[str] = None


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_name: str
    quantity: int = 1
    calculator_selections: Dict[str, Any] = Field(default_factory=dict)


class Proof(BaseModel):
    id: str
    order_id: str
    order_item_id: Optional[str] = None
    file_url: str
    file_public_id: str
    title: str
    status: ProofStatus = ProofStatus.PENDING
    cut_lines: List[str] = Field(default_factory=list)
    admin_notes: Optional[str] = None
    customer_notes: Optional[str] = None
    extracted_dimensions: Optional[Dimensions] = None
    replaced: bool = False
    replaced_at: Optional[datetime] = None
    original_file_name: Optional[str] = None
    customer_file_url: Optional[str] = None
    customer_file_public_id: Optional[str] = None
    uploaded_at: datetime
    sent_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    changes_requested_at: Optional[datetime] = None


class Order(BaseModel):
    id: str
    order_number: Optional[str] = None
    created_at: datetime
    items: List[OrderItem] = Field(default_factory=list)
    proofs: List[Proof] = Field(default_factory=list)
    events: List[OrderEvent] = Field(default_factory=list)


class ApprovalSummary(BaseModel):
    approved: int
    total: int
    ready_for_production: bool


class ProofView(Proof):
    """A proof with the renditions the review screens display."""

    display_url: str
    thumbnail_url: str
    preview_url: str
    customer_file_display_url: Optional[str] = None


class OrderDetail(Order):
    proofs: List[ProofView] = Field(default_factory=list)
    proof_status: str
    approval: ApprovalSummary
    review_action: str
    send_action_label: str


class OrderCreate(BaseModel):
    id: Optional[str] = None
    order_number: Optional[str] = None


class OrderItemCreate(BaseModel):
    id: Optional[str] = None
    product_name: str
    quantity: int = 1
    calculator_selections: Dict[str, Any] = Field(default_factory=dict)


class ProofInput(BaseModel):
    file_url: str
    file_public_id: str
    title: str
    order_item_id: Optional[str] = None
    cut_lines: List[str] = Field(default_factory=list)
    admin_notes: Optional[str] = None
    extracted_dimensions: Optional[Dimensions] = None


class ProofFileInput(BaseModel):
    file_url: str
    file_public_id: str
    title: str
    cut_lines: Optional[List[str]] = None
    extracted_dimensions: Optional[Dimensions] = None


class ProofNotesUpdate(BaseModel):
    admin_notes: Optional[str] = None
    customer_notes: Optional[str] = None


class ProofStatusUpdate(BaseModel):
    status: ProofStatus
    customer_notes: Optional[str] = None


class FileValidation(BaseModel):
    valid: bool
    error: Optional[str] = None


class UploadProgress(BaseModel):
    loaded: int
    total: int
    percentage: int


class StoredObject(BaseModel):
    public_id: str
    url: str
    bytes: int
    format: str
    original_filename: str
    width: Optional[int] = None
    height: Optional[int] = None


class CutContourAnalysis(BaseModel):
    filename: str
    has_cut_contour: bool = False
    layers_found: List[str] = Field(default_factory=list)
    spot_colors_found: List[str] = Field(default_factory=list)
    dimensions_inches: Optional[Dimensions] = None
    bounding_box: Optional[BoundingBox] = None
    detected_by: Optional[str] = None
    page_count: int = 0
    details: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)


class SizeCheck(BaseModel):
    matches: bool
    message: str
    delta_width: float
    delta_height: float


class UploadEvent(BaseModel):
    timestamp: datetime
    message: str


class UploadSummary(BaseModel):
    id: str
    order_id: str
    filename: str
    state: UploadState
    attempts: int
    progress: int = 0
    retryable: bool = False
    order_item_id: Optional[str] = None
    replace_proof_id: Optional[str] = None
    proof_id: Optional[str] = None
    error: Optional[str] = None
    analysis: Optional[CutContourAnalysis] = None
    analysis_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UploadDetail(UploadSummary):
    events: List[UploadEvent] = Field(default_factory=list)
