"""Resolve which subscribers receive a given time slot."""

from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session, joinedload

from .models import DeliveryPreference, Subscriber, SubscriberTier
from .slots import TimeSlot


@dataclass(frozen=True)
class SlotRecipient:
    user_id: UUID
    email: str
    tier: SubscriberTier
    preferred_slots: tuple[TimeSlot, ...]


def resolve_preferred_slots(tier: SubscriberTier, pref: DeliveryPreference | None) -> tuple[TimeSlot, ...]:
    """Explicit preferences win; otherwise free gets morning only and premium gets every slot.

    With a preference row, morning stays on unless explicitly disabled while
    noon and evening are opt-in.
    """
    if pref is not None:
        slots = []
        if pref.morning_enabled is not False:
            slots.append(TimeSlot.MORNING)
        if pref.noon_enabled:
            slots.append(TimeSlot.NOON)
        if pref.evening_enabled:
            slots.append(TimeSlot.EVENING)
        return tuple(slots)

    if tier == SubscriberTier.PREMIUM:
        return (TimeSlot.MORNING, TimeSlot.NOON, TimeSlot.EVENING)
    return (TimeSlot.MORNING,)


def get_users_for_slot(
    db: Session,
    slot: TimeSlot,
    force_all: bool = False,
    user_ids: Iterable[UUID] | None = None,
) -> list[SlotRecipient]:
    """Active subscribers eligible for ``slot``, in a stable fetch order.

    ``force_all`` skips the preference filter (used together with ``user_ids``
    for test sends).
    """
    query = (
        db.query(Subscriber)
        .options(joinedload(Subscriber.preference))
        .filter(Subscriber.is_active == True)  # noqa: E712
    )
    if user_ids is not None:
        query = query.filter(Subscriber.id.in_(list(user_ids)))

    recipients = []
    for sub in query.order_by(Subscriber.created_at.asc(), Subscriber.id.asc()).all():
        slots = resolve_preferred_slots(sub.tier, sub.preference)
        if force_all or slot in slots:
            recipients.append(SlotRecipient(sub.id, sub.email, sub.tier, slots))
    return recipients
