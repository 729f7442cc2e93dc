"""
Instance state machine.

A physical copy moves between a fixed set of states. Circulation moves it
``available -> on_loan`` on issue and ``on_loan -> available`` on return;
everything else is an administrative move that never touches ``on_loan``,
so an instance is on loan exactly when it has one open loan.

Transitions are applied as a compare-and-set:

    UPDATE book_instance SET status = :target
    WHERE id = :id AND status = :source

Zero affected rows means another unit got there first (or the instance is
in some other state), and nothing was written.
"""
import logging
from datetime import datetime

from sqlalchemy import select, update

from .errors import NotFound, PreconditionViolation
from .models import BookInstance, InstanceStatus, InstanceStatusEvent

logger = logging.getLogger(__name__)


# reason -> (required source, target)
CIRCULATION_TRANSITIONS = {
    "issue": (InstanceStatus.AVAILABLE, InstanceStatus.ON_LOAN),
    "return": (InstanceStatus.ON_LOAN, InstanceStatus.AVAILABLE),
}

ADMIN_TRANSITIONS = {
    InstanceStatus.AVAILABLE: {
        InstanceStatus.RESERVED,
        InstanceStatus.IN_REPAIR,
        InstanceStatus.LOST,
        InstanceStatus.WRITTEN_OFF,
    },
    InstanceStatus.RESERVED: {
        InstanceStatus.AVAILABLE,
        InstanceStatus.IN_REPAIR,
        InstanceStatus.LOST,
        InstanceStatus.WRITTEN_OFF,
    },
    InstanceStatus.IN_REPAIR: {
        InstanceStatus.AVAILABLE,
        InstanceStatus.LOST,
        InstanceStatus.WRITTEN_OFF,
    },
    InstanceStatus.LOST: {InstanceStatus.AVAILABLE, InstanceStatus.WRITTEN_OFF},
    InstanceStatus.WRITTEN_OFF: set(),
    InstanceStatus.ON_LOAN: set(),
}


def can_transition(source, target, reason="admin"):
    source = InstanceStatus(source)
    target = InstanceStatus(target)
    if reason in CIRCULATION_TRANSITIONS:
        return CIRCULATION_TRANSITIONS[reason] == (source, target)
    return target in ADMIN_TRANSITIONS[source]


def current_status(session, instance_id):
    status = session.execute(
        select(BookInstance.status).where(BookInstance.id == instance_id)
    ).scalar_one_or_none()
    if status is None:
        raise NotFound("Instance", instance_id)
    return InstanceStatus(status)


def apply_transition(session, instance_id, source, target, reason):
    """
    Move an instance from ``source`` to ``target`` inside the caller's unit.

    Raises NotFound for unknown instances and PreconditionViolation (carrying
    the actual status) when the instance is not in ``source``.
    """
    source = InstanceStatus(source)
    target = InstanceStatus(target)
    if not can_transition(source, target, reason):
        raise PreconditionViolation(
            f"Transition {source.value} -> {target.value} is not allowed",
            status=source.value,
        )

    result = session.execute(
        update(BookInstance)
        .where(BookInstance.id == instance_id, BookInstance.status == source)
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        actual = current_status(session, instance_id)
        raise PreconditionViolation(
            f"Instance {instance_id} is not {source.value}. Status: {actual.value}",
            status=actual.value,
        )

    session.add(
        InstanceStatusEvent(
            instance_id=instance_id,
            from_status=source,
            to_status=target,
            reason=reason,
            created_at=datetime.utcnow(),
        )
    )
    logger.info(
        "Instance %s: %s -> %s (%s)", instance_id, source.value, target.value, reason
    )
