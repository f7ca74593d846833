"""
Proof lifecycle state machine and order-level aggregation.

Statuses move ``pending -> sent -> approved | changes_requested``. Sending is
an admin batch action over a whole order; approving and requesting changes
are customer actions on a single proof. A proof whose changes were requested
goes back to the customer once the admin replaces its file and re-sends it.
``approved`` is terminal.

Order-level status is always computed from the proofs, never stored.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional, Sequence

from .errors import TransitionRejected
from .models import ApprovalSummary, Dimensions, Proof, ProofStatus, SizeCheck

TRANSITIONS: Dict[ProofStatus, frozenset] = {
    ProofStatus.PENDING: frozenset({ProofStatus.SENT}),
    ProofStatus.SENT: frozenset({ProofStatus.APPROVED, ProofStatus.CHANGES_REQUESTED, ProofStatus.PENDING}),
    ProofStatus.CHANGES_REQUESTED: frozenset({ProofStatus.SENT, ProofStatus.PENDING}),
    ProofStatus.APPROVED: frozenset(),
}

# Statuses the admin "send" batch picks up
UNRESOLVED_STATUSES = frozenset({ProofStatus.PENDING, ProofStatus.CHANGES_REQUESTED})

# Statuses a customer may set
CUSTOMER_STATUSES = frozenset({ProofStatus.APPROVED, ProofStatus.CHANGES_REQUESTED})

ADMIN_STATUS_LABELS = {
    ProofStatus.PENDING: "Ready to Send",
    ProofStatus.SENT: "Sent to Customer",
    ProofStatus.APPROVED: "Approved",
    ProofStatus.CHANGES_REQUESTED: "Changes Requested",
}

CUSTOMER_STATUS_LABELS = {
    ProofStatus.PENDING: "Pending Review",
    ProofStatus.SENT: "Pending Review",
    ProofStatus.APPROVED: "Approved",
    ProofStatus.CHANGES_REQUESTED: "Changes Requested",
}

DEFAULT_SIZE_TOLERANCE = 0.1


def can_transition(current: ProofStatus, target: ProofStatus) -> bool:
    return target in TRANSITIONS[ProofStatus(current)]


def ensure_transition(current: ProofStatus, target: ProofStatus) -> None:
    current = ProofStatus(current)
    target = ProofStatus(target)
    if current == ProofStatus.APPROVED:
        raise TransitionRejected("Proof is already approved and can no longer change")
    if not can_transition(current, target):
        raise TransitionRejected(f"Cannot move proof from {current.value} to {target.value}")


def check_change_request(customer_notes: Optional[str], has_replacement_file: bool) -> None:
    """
    Guard for the customer "request changes" action.

    Admins must always receive actionable feedback, so the request needs a
    note, a replacement file, or both.
    """
    if has_replacement_file:
        return
    if not customer_notes or not customer_notes.strip():
        raise TransitionRejected("Add a note describing the changes or upload a replacement file")


def check_customer_action(current: ProofStatus, target: ProofStatus, customer_notes: Optional[str] = None, has_replacement_file: bool = False) -> None:
    target = ProofStatus(target)
    if target not in CUSTOMER_STATUSES:
        raise TransitionRejected(f"Customers cannot set proof status to {target.value}")
    if target == ProofStatus.CHANGES_REQUESTED:
        check_change_request(customer_notes, has_replacement_file)
    ensure_transition(current, target)


def proofs_to_send(proofs: Sequence[Proof]) -> list[Proof]:
    """Proofs picked up by a send; raises if the order has nothing to send."""
    if not proofs:
        raise TransitionRejected("Order has no proofs to send")
    return [proof for proof in proofs if proof.status in UNRESOLVED_STATUSES]


def all_approved(proofs: Sequence[Proof]) -> bool:
    return len(proofs) > 0 and all(proof.status == ProofStatus.APPROVED for proof in proofs)


def approval_summary(proofs: Sequence[Proof]) -> ApprovalSummary:
    approved = sum(1 for proof in proofs if proof.status == ProofStatus.APPROVED)
    return ApprovalSummary(approved=approved, total=len(proofs), ready_for_production=all_approved(proofs))


def order_proof_status(proofs: Sequence[Proof]) -> str:
    if not proofs:
        return "none"
    statuses = {proof.status for proof in proofs}
    if statuses == {ProofStatus.APPROVED}:
        return "approved"
    if ProofStatus.CHANGES_REQUESTED in statuses:
        return "changes_requested"
    if ProofStatus.SENT in statuses:
        return "awaiting_approval"
    return "pending"


def review_action(proofs: Sequence[Proof], local_pending: int = 0) -> str:
    """
    Decide which admin button the review surface shows.

    ``"send"`` while anything is waiting to go out (a pending proof or a file
    uploaded locally but not yet sent), ``"view"`` once every proof is sent or
    approved, ``"none"`` otherwise.
    """
    if local_pending > 0 or any(proof.status == ProofStatus.PENDING for proof in proofs):
        return "send"
    if proofs and all(proof.status in (ProofStatus.SENT, ProofStatus.APPROVED) for proof in proofs):
        return "view"
    return "none"


def send_action_label(proofs: Sequence[Proof]) -> str:
    if any(proof.changes_requested_at is not None and proof.status in UNRESOLVED_STATUSES for proof in proofs):
        return "Re-Send"
    return "Send Proofs"


def status_label(status: ProofStatus, audience: str = "admin") -> str:
    labels = CUSTOMER_STATUS_LABELS if audience == "customer" else ADMIN_STATUS_LABELS
    return labels[ProofStatus(status)]


def check_dimensions(
    extracted: Dimensions,
    ordered: Dimensions,
    tolerance: float = DEFAULT_SIZE_TOLERANCE,
) -> SizeCheck:
    """
    Compare a file's cut contour size with the ordered size, per axis.

    Advisory only: the result is shown to the admin and never blocks a transition.
    """
    delta_width = round(abs(extracted.width - ordered.width), 4)
    delta_height = round(abs(extracted.height - ordered.height), 4)
    # small epsilon so a delta of exactly the tolerance is not lost to float noise
    matches = delta_width <= tolerance + 1e-9 and delta_height <= tolerance + 1e-9
    if matches:
        message = "sizes match"
    else:
        message = (
            f'size mismatch: file is {extracted.width:g}" x {extracted.height:g}", '
            f'ordered {ordered.width:g}" x {ordered.height:g}"'
        )
    return SizeCheck(matches=matches, message=message, delta_width=delta_width, delta_height=delta_height)


_SIZE_PAIR_PATTERN = re.compile(r'(\d+(?:\.\d+)?)\s*"?\s*[x×]\s*(\d+(?:\.\d+)?)', re.IGNORECASE)
_SIZE_SINGLE_PATTERN = re.compile(r'(\d+(?:\.\d+)?)\s*"')


def _as_float(value: Any) -> Optional[float]:
    try:
        number = float(str(value).strip().rstrip('"'))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def ordered_size_from_selections(selections: Optional[Mapping[str, Any]]) -> Optional[Dimensions]:
    """
    Derive the ordered size in inches from calculator selections.

    Understands explicit ``customWidth``/``customHeight`` values and size
    strings such as ``4" x 6"``, ``4x6`` or ``Medium (3")`` (square).
    Selections may be flat or nested as ``{"size": {"value": ...}}``.
    """
    if not selections:
        return None

    width = _as_float(selections.get("customWidth"))
    height = _as_float(selections.get("customHeight"))
    if width and height:
        return Dimensions(width=width, height=height)

    for key in ("size", "selectedSize"):
        raw = selections.get(key)
        if isinstance(raw, Mapping):
            raw = raw.get("value") or raw.get("displayValue")
        if not raw:
            continue
        text = str(raw)
        pair = _SIZE_PAIR_PATTERN.search(text)
        if pair:
            return Dimensions(width=float(pair.group(1)), height=float(pair.group(2)))
        single = _SIZE_SINGLE_PATTERN.search(text) or re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*", text)
        if single:
            side = float(single.group(1))
            return Dimensions(width=side, height=side)
    return None
