"""
Proof store: the single writer of truth for proof records.

Every operation is one atomic step with respect to the proof it touches and
returns the refreshed ``Order`` so callers reconcile their view by proof id
instead of keeping a status copy of their own.

Rows are normalised into ``Proof`` models here, once, including rows written
by the legacy frontend (``proofUrl``/``proofTitle`` keys, cut lines stored as
a comma string, extracted dimensions encoded in the admin notes).
"""

from __future__ import annotations

import logging
import re
import sqlite3
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from .database import ProofDatabase
from .errors import NotFoundError, TransitionRejected
from .lifecycle import (
    DEFAULT_SIZE_TOLERANCE,
    check_customer_action,
    check_dimensions,
    ensure_transition,
    ordered_size_from_selections,
    proofs_to_send,
)
from .models import (
    Dimensions,
    Order,
    OrderCreate,
    OrderEvent,
    OrderItem,
    OrderItemCreate,
    Proof,
    ProofFileInput,
    ProofInput,
    ProofStatus,
    SizeCheck,
    StoredObject,
)
from .utils import normalize_tags, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROOFS_PER_ORDER = 25

_LEGACY_DIMENSIONS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:in|\")?\s*[x×]\s*(\d+(?:\.\d+)?)", re.IGNORECASE)

# legacy key -> normalised key
_LEGACY_KEYS = {
    "orderId": "order_id",
    "orderItemId": "order_item_id",
    "proofUrl": "file_url",
    "proofPublicId": "file_public_id",
    "proofTitle": "title",
    "cutLines": "cut_lines",
    "adminNotes": "admin_notes",
    "customerNotes": "customer_notes",
    "replacedAt": "replaced_at",
    "uploadedAt": "uploaded_at",
    "approvedAt": "approved_at",
    "changesRequestedAt": "changes_requested_at",
    "originalFileName": "original_file_name",
}


def parse_legacy_dimensions(notes: Optional[str]) -> Optional[Dimensions]:
    """Read ``WIDTHxHEIGHT`` dimensions that older uploads wrote into admin notes."""
    if not notes:
        return None
    match = _LEGACY_DIMENSIONS_PATTERN.search(notes)
    if not match:
        return None
    return Dimensions(width=float(match.group(1)), height=float(match.group(2)))


def normalize_proof(raw: Mapping[str, Any], order_id: Optional[str] = None) -> Proof:
    """
    Build a ``Proof`` from a stored row or a legacy payload.

    Args:
        raw: Row dictionary from ``ProofDatabase`` or a legacy camelCase proof
            (admin notes are only read for dimensions in the camelCase form)
        order_id: Owning order, used when the payload does not carry one
    """
    data: Dict[str, Any] = {}
    legacy = False
    for key, value in raw.items():
        if key in _LEGACY_KEYS:
            legacy = True
        data[_LEGACY_KEYS.get(key, key)] = value

    if order_id and not data.get("order_id"):
        data["order_id"] = order_id

    cut_lines = data.get("cut_lines")
    if isinstance(cut_lines, str):
        cut_lines = cut_lines.split(",")
    data["cut_lines"] = normalize_tags(cut_lines)

    width = data.pop("extracted_width", None)
    height = data.pop("extracted_height", None)
    if data.get("extracted_dimensions") is None:
        if width is not None and height is not None:
            data["extracted_dimensions"] = Dimensions(width=width, height=height)
        elif legacy:
            # only rows from the old frontend kept dimensions in the notes
            data["extracted_dimensions"] = parse_legacy_dimensions(data.get("admin_notes"))

    data["status"] = data.get("status") or ProofStatus.PENDING
    data["replaced"] = bool(data.get("replaced"))
    if data.get("uploaded_at") is None:
        data["uploaded_at"] = utcnow()
    return Proof(**{key: value for key, value in data.items() if key in Proof.model_fields})


class ProofStore:
    """
    Proof operations over ``ProofDatabase``.

    Thread Safety:
        Mutations hold a lock across their read-check-write sequence so that
        concurrent upload tasks cannot break the per-order invariants (proof
        cap, one pending proof per order item).
    """

    def __init__(self, db: ProofDatabase, max_proofs_per_order: int = DEFAULT_MAX_PROOFS_PER_ORDER) -> None:
        self.db = db
        self.max_proofs_per_order = max_proofs_per_order
        self._lock = Lock()

    # Orders

    def create_order(self, payload: OrderCreate) -> Order:
        order_id = payload.id or uuid4().hex
        try:
            self.db.insert_order(order_id, payload.order_number, utcnow())
        except sqlite3.IntegrityError as exc:
            raise TransitionRejected(f"Order {order_id} already exists", original_error=exc) from exc
        logger.info(f"Order {order_id} registered")
        return self.get_proofs_for_order(order_id)

    def add_order_item(self, order_id: str, payload: OrderItemCreate) -> Order:
        self._require_order(order_id)
        item_id = payload.id or uuid4().hex
        try:
            self.db.insert_item(
                {
                    "id": item_id,
                    "order_id": order_id,
                    "product_name": payload.product_name,
                    "quantity": payload.quantity,
                    "calculator_selections": payload.calculator_selections,
                }
            )
        except sqlite3.IntegrityError as exc:
            raise TransitionRejected(f"Order item {item_id} already exists", original_error=exc) from exc
        return self.get_proofs_for_order(order_id)

    def get_proofs_for_order(self, order_id: str) -> Order:
        order = self._require_order(order_id)
        return Order(
            id=order["id"],
            order_number=order["order_number"],
            created_at=order["created_at"],
            items=[OrderItem(**item) for item in self.db.list_items(order_id)],
            proofs=[normalize_proof(row) for row in self.db.list_proofs(order_id)],
            events=[OrderEvent(**event) for event in self.db.list_events(order_id)],
        )

    def get_proof(self, order_id: str, proof_id: str) -> Proof:
        self._require_order(order_id)
        row = self.db.get_proof(proof_id)
        if row is None or row["order_id"] != order_id:
            raise NotFoundError(f"Proof {proof_id} not found on order {order_id}")
        return normalize_proof(row)

    # Admin operations

    def add_proof(self, order_id: str, payload: ProofInput) -> Order:
        """
        Attach a new proof to an order (status ``pending``).

        Raises:
            NotFoundError: If the order or the referenced order item does not exist
            TransitionRejected: If the order is at its proof cap or the item already
                has a pending proof awaiting its first send
        """
        with self._lock:
            order = self.get_proofs_for_order(order_id)
            if len(order.proofs) >= self.max_proofs_per_order:
                raise TransitionRejected(f"Order {order_id} already has the maximum of {self.max_proofs_per_order} proofs")

            if payload.order_item_id is not None:
                if payload.order_item_id not in {item.id for item in order.items}:
                    raise NotFoundError(f"Order item {payload.order_item_id} not found on order {order_id}")
                for proof in order.proofs:
                    if proof.order_item_id == payload.order_item_id and proof.status == ProofStatus.PENDING and proof.sent_at is None:
                        raise TransitionRejected(
                            f"Order item {payload.order_item_id} already has a pending proof; replace it instead"
                        )

            proof_id = uuid4().hex
            dimensions = payload.extracted_dimensions
            self.db.insert_proof(
                {
                    "id": proof_id,
                    "order_id": order_id,
                    "order_item_id": payload.order_item_id,
                    "file_url": payload.file_url,
                    "file_public_id": payload.file_public_id,
                    "title": payload.title,
                    "status": ProofStatus.PENDING.value,
                    "cut_lines": normalize_tags(payload.cut_lines),
                    "admin_notes": payload.admin_notes,
                    "extracted_width": dimensions.width if dimensions else None,
                    "extracted_height": dimensions.height if dimensions else None,
                    "replaced": False,
                    "uploaded_at": utcnow(),
                }
            )
            self._event(order_id, f"Proof uploaded: {payload.title}", proof_id)
        return self.get_proofs_for_order(order_id)

    def replace_proof_file(self, order_id: str, proof_id: str, payload: ProofFileInput) -> Order:
        """
        Swap a proof's file in place.

        The proof keeps its id and ``uploaded_at``; ``replaced``/``replaced_at``
        record the swap and the status returns to ``pending`` so it is re-sent.
        """
        with self._lock:
            proof = self.get_proof(order_id, proof_id)
            if proof.status == ProofStatus.APPROVED:
                raise TransitionRejected("Approved proofs cannot be replaced")

            fields: Dict[str, Any] = {
                "file_url": payload.file_url,
                "file_public_id": payload.file_public_id,
                "title": payload.title,
                "replaced": True,
                "replaced_at": utcnow(),
                "extracted_width": payload.extracted_dimensions.width if payload.extracted_dimensions else None,
                "extracted_height": payload.extracted_dimensions.height if payload.extracted_dimensions else None,
            }
            if payload.cut_lines is not None:
                fields["cut_lines"] = normalize_tags(payload.cut_lines)
            if proof.status != ProofStatus.PENDING:
                ensure_transition(proof.status, ProofStatus.PENDING)
                fields["status"] = ProofStatus.PENDING.value

            self.db.update_proof(proof_id, fields)
            self._event(order_id, f"Proof file replaced: {proof.title} -> {payload.title}", proof_id)
        return self.get_proofs_for_order(order_id)

    def remove_proof(self, order_id: str, proof_id: str) -> Order:
        with self._lock:
            proof = self.get_proof(order_id, proof_id)
            self.db.delete_proof(proof_id)
            self._event(order_id, f"Proof removed: {proof.title}", proof_id)
        return self.get_proofs_for_order(order_id)

    def add_proof_notes(
        self,
        order_id: str,
        proof_id: str,
        admin_notes: Optional[str] = None,
        customer_notes: Optional[str] = None,
    ) -> Order:
        with self._lock:
            self.get_proof(order_id, proof_id)
            fields: Dict[str, Any] = {}
            if admin_notes is not None:
                fields["admin_notes"] = admin_notes
            if customer_notes is not None:
                fields["customer_notes"] = customer_notes
            self.db.update_proof(proof_id, fields)
            if fields:
                self._event(order_id, "Proof notes updated", proof_id)
        return self.get_proofs_for_order(order_id)

    def send_proofs(self, order_id: str) -> Order:
        """
        Send every unresolved proof on the order to the customer.

        Pending and changes-requested proofs move to ``sent``; sent and approved
        proofs are untouched.

        Raises:
            TransitionRejected: If the order has no proofs at all
        """
        with self._lock:
            order = self.get_proofs_for_order(order_id)
            to_send = proofs_to_send(order.proofs)
            now = utcnow()
            with self.db.transaction() as conn:
                for proof in to_send:
                    ensure_transition(proof.status, ProofStatus.SENT)
                    self.db.update_proof(proof.id, {"status": ProofStatus.SENT.value, "sent_at": now}, conn=conn)
            self._event(order_id, f"{len(to_send)} proof(s) sent to customer")
        logger.info(f"Sent {len(to_send)} proof(s) on order {order_id}")
        return self.get_proofs_for_order(order_id)

    # Customer operations

    def update_proof_status(
        self,
        order_id: str,
        proof_id: str,
        status: ProofStatus,
        customer_notes: Optional[str] = None,
        has_replacement_file: bool = False,
    ) -> Order:
        """
        Apply a customer decision (approve or request changes) to one proof.

        Raises:
            TransitionRejected: If the move is not allowed from the proof's current
                status, or changes are requested without a note or file
        """
        status = ProofStatus(status)
        with self._lock:
            proof = self.get_proof(order_id, proof_id)
            check_customer_action(proof.status, status, customer_notes, has_replacement_file)

            fields: Dict[str, Any] = {"status": status.value}
            if customer_notes is not None and customer_notes.strip():
                fields["customer_notes"] = customer_notes
            if status == ProofStatus.APPROVED:
                fields["approved_at"] = utcnow()
                message = f"Proof approved: {proof.title}"
            else:
                fields["changes_requested_at"] = utcnow()
                message = f"Changes requested: {proof.title}"
            self.db.update_proof(proof_id, fields)
            self._event(order_id, message, proof_id)
        logger.info(f"Proof {proof_id} on order {order_id} -> {status.value}")
        return self.get_proofs_for_order(order_id)

    def submit_customer_revision(
        self,
        order_id: str,
        proof_id: str,
        stored: StoredObject,
        original_file_name: str,
        customer_notes: Optional[str] = None,
    ) -> Order:
        """Record a customer's replacement artwork and request changes on the proof."""
        with self._lock:
            proof = self.get_proof(order_id, proof_id)
            check_customer_action(proof.status, ProofStatus.CHANGES_REQUESTED, customer_notes, has_replacement_file=True)
            now = utcnow()
            fields: Dict[str, Any] = {
                "status": ProofStatus.CHANGES_REQUESTED.value,
                "changes_requested_at": now,
                "customer_file_url": stored.url,
                "customer_file_public_id": stored.public_id,
                "original_file_name": original_file_name,
            }
            if customer_notes is not None and customer_notes.strip():
                fields["customer_notes"] = customer_notes
            self.db.update_proof(proof_id, fields)
            self._event(order_id, f"Customer uploaded replacement file: {original_file_name}", proof_id)
        return self.get_proofs_for_order(order_id)

    # Read helpers

    def size_check(self, order_id: str, item_id: str, tolerance: float = DEFAULT_SIZE_TOLERANCE) -> SizeCheck:
        """
        Compare the item's proof contour with the size ordered for the item.

        Raises:
            NotFoundError: If the item, its ordered size, or a measured proof is missing
        """
        order = self.get_proofs_for_order(order_id)
        item = next((item for item in order.items if item.id == item_id), None)
        if item is None:
            raise NotFoundError(f"Order item {item_id} not found on order {order_id}")
        ordered = ordered_size_from_selections(item.calculator_selections)
        if ordered is None:
            raise NotFoundError(f"Order item {item_id} has no ordered size")
        measured: List[Proof] = [
            proof for proof in order.proofs if proof.order_item_id == item_id and proof.extracted_dimensions is not None
        ]
        if not measured:
            raise NotFoundError(f"No measured proof for order item {item_id}")
        latest = max(measured, key=lambda proof: proof.replaced_at or proof.uploaded_at)
        return check_dimensions(latest.extracted_dimensions, ordered, tolerance)

    def _require_order(self, order_id: str) -> Dict[str, Any]:
        order = self.db.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def _event(self, order_id: str, message: str, proof_id: Optional[str] = None) -> None:
        logger.info(f"Order {order_id}: {message}")
        self.db.add_event(order_id, message, utcnow(), proof_id)
