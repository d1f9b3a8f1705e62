"""Priority classification — request label (+ appointment time) → tier."""

from __future__ import annotations

from datetime import datetime

from queue_engine.config import PRIORITY_LABELS, VIP_CODES
from queue_engine.domain import PriorityRequest, PriorityTier
from queue_engine.errors import ErrorCode, ValidationError


def normalise_label(label: str | PriorityTier) -> str:
    """Return the canonical lower-case label, or raise for unknown ones."""
    if isinstance(label, PriorityTier):
        return label.value
    key = (label or "").strip().lower()
    if key not in PRIORITY_LABELS:
        raise ValidationError(
            f"Unknown priority {label!r}. Must be one of: {', '.join(PRIORITY_LABELS)}",
            code=ErrorCode.INVALID_PRIORITY,
        )
    return key


def classify(label: str | PriorityTier, appointment_time: datetime | None = None) -> PriorityTier:
    """Map a priority label and optional appointment time to a tier.

    ``appointment`` needs a time; ``vip`` with a time is an appointment.
    A time on any other label is rejected rather than ignored.
    """
    tier = PriorityTier(PRIORITY_LABELS[normalise_label(label)])

    if tier is PriorityTier.APPOINTMENT and appointment_time is None:
        raise ValidationError(
            "Appointment tickets need an appointment time",
            code=ErrorCode.INVALID_PRIORITY,
        )
    if appointment_time is not None:
        if tier is PriorityTier.VIP:
            return PriorityTier.APPOINTMENT
        if tier is not PriorityTier.APPOINTMENT:
            raise ValidationError(
                f"An appointment time is not valid for priority {tier.value!r}",
                code=ErrorCode.INVALID_PRIORITY,
            )
    return tier


def resolve_request(request: PriorityRequest) -> tuple[PriorityTier, str, str | None]:
    """Classify a full issuance request.

    Returns ``(tier, label, vip_code)``. A known VIP code upgrades a normal
    request to VIP; an unknown one is a ``ValidationError``.
    """
    label = normalise_label(request.label)
    vip_code = None
    if request.vip_code:
        vip_code = request.vip_code.strip().upper()
        if vip_code not in VIP_CODES:
            raise ValidationError("Invalid VIP code", code=ErrorCode.INVALID_PRIORITY)
        if label == "normal":
            label = "vip"
    return classify(label, request.appointment_time), label, vip_code
