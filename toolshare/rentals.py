"""Rental request lifecycle.

pending -> approved -> returned_pending -> completed
pending -> rejected

Owners approve, reject and confirm returns; renters only mark an approved
rental as returned. ``Tool.available`` is written here and nowhere else:
false on approval, true once the owner confirms the return.
"""

import datetime
import logging
from typing import Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from .errors import Conflict, Forbidden, InvalidState, NotFound, Validation
from .models import (
    OPEN_STATUSES,
    RentalRequest,
    RentalStatus,
    Tool,
    utcnow,
)

logger = logging.getLogger(__name__)


def begin_write(session: Session) -> None:
    """Hold SQLite's write lock for the rest of the transaction.

    SQLite ignores FOR UPDATE and pysqlite only issues BEGIN before the first
    write, so the read-check-write of a transition needs BEGIN IMMEDIATE.
    """
    connection = session.connection()
    if connection.dialect.name != "sqlite":
        return
    if not connection.connection.dbapi_connection.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def get_rental(session: Session, rental_id: int, lock: bool = False) -> RentalRequest:
    statement = select(RentalRequest).where(RentalRequest.id == rental_id)
    if lock:
        begin_write(session)
        statement = statement.with_for_update().execution_options(
            populate_existing=True
        )
    rental = session.exec(statement).first()
    if not rental:
        raise NotFound("Rental not found")
    return rental


def lock_tool(session: Session, tool_id: int) -> Tool:
    """Row-lock the tool so overlap checks and status writes see one snapshot."""
    begin_write(session)
    tool = session.exec(
        select(Tool)
        .where(Tool.id == tool_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if not tool:
        raise NotFound("Tool not found")
    return tool


def find_overlapping_approved(
    session: Session,
    tool_id: int,
    start: datetime.date,
    end: datetime.date,
    exclude_id: Optional[int] = None,
) -> list[RentalRequest]:
    # Ranges are inclusive on both ends.
    query = (
        select(RentalRequest)
        .where(RentalRequest.tool_id == tool_id)
        .where(RentalRequest.status == RentalStatus.approved)
        .where(RentalRequest.start_date <= end)
        .where(RentalRequest.end_date >= start)
    )
    if exclude_id is not None:
        query = query.where(RentalRequest.id != exclude_id)
    return list(session.exec(query).all())


def has_open_rentals(session: Session, tool_id: int) -> bool:
    rental = session.exec(
        select(RentalRequest)
        .where(RentalRequest.tool_id == tool_id)
        .where(RentalRequest.status.in_(OPEN_STATUSES))
    ).first()
    return rental is not None


def user_has_open_rentals(session: Session, user_id: int) -> bool:
    """True while the user owns or rents anything not yet completed or rejected."""
    rental = session.exec(
        select(RentalRequest)
        .where(
            or_(RentalRequest.owner_id == user_id, RentalRequest.renter_id == user_id)
        )
        .where(RentalRequest.status.in_(OPEN_STATUSES))
    ).first()
    return rental is not None


def request_rental(
    session: Session,
    tool_id: int,
    renter_id: int,
    start_date: datetime.date,
    end_date: datetime.date,
) -> RentalRequest:
    if end_date < start_date:
        raise Validation("End date must not be before start date")

    tool = session.get(Tool, tool_id)
    if not tool:
        raise NotFound("Tool not found")
    if not tool.available:
        raise Conflict("Tool not available")
    if tool.owner_id == renter_id:
        raise Forbidden("You cannot rent your own tool")

    # Only approved bookings block a request; pending ones may overlap freely.
    if find_overlapping_approved(session, tool_id, start_date, end_date):
        raise Conflict("Tool is already booked for the requested dates")

    rental = RentalRequest(
        tool_id=tool.id,
        renter_id=renter_id,
        owner_id=tool.owner_id,
        start_date=start_date,
        end_date=end_date,
        status=RentalStatus.pending,
    )
    session.add(rental)
    session.commit()
    session.refresh(rental)
    logger.info(
        "Rental %s requested: tool=%s renter=%s %s..%s",
        rental.id,
        tool_id,
        renter_id,
        start_date,
        end_date,
    )
    return rental


def approve_rental(session: Session, rental_id: int, owner_id: int) -> RentalRequest:
    rental = get_rental(session, rental_id)
    if rental.owner_id != owner_id:
        raise Forbidden()

    tool = lock_tool(session, rental.tool_id)
    rental = get_rental(session, rental_id, lock=True)
    if rental.status != RentalStatus.pending:
        raise InvalidState("Only pending requests can be approved")

    overlapping = find_overlapping_approved(
        session, rental.tool_id, rental.start_date, rental.end_date, exclude_id=rental.id
    )
    if overlapping:
        logger.warning(
            "Rental %s approval refused: overlaps approved rental %s",
            rental.id,
            overlapping[0].id,
        )
        raise Conflict("Dates overlap an approved rental for this tool")

    rental.status = RentalStatus.approved
    tool.available = False
    session.add(rental)
    session.add(tool)
    session.commit()
    session.refresh(rental)
    logger.info("Rental %s approved, tool %s locked", rental.id, tool.id)
    return rental


def reject_rental(session: Session, rental_id: int, owner_id: int) -> RentalRequest:
    rental = get_rental(session, rental_id)
    if rental.owner_id != owner_id:
        raise Forbidden()

    rental = get_rental(session, rental_id, lock=True)
    if rental.status != RentalStatus.pending:
        raise InvalidState("Only pending requests can be rejected")

    rental.status = RentalStatus.rejected
    session.add(rental)
    session.commit()
    session.refresh(rental)
    logger.info("Rental %s rejected", rental.id)
    return rental


def mark_returned(session: Session, rental_id: int, renter_id: int) -> RentalRequest:
    rental = get_rental(session, rental_id)
    if rental.renter_id != renter_id:
        raise Forbidden()

    rental = get_rental(session, rental_id, lock=True)
    if rental.status != RentalStatus.approved:
        raise InvalidState("Only approved rentals can be returned")

    rental.status = RentalStatus.returned_pending
    rental.returned_at = utcnow()
    session.add(rental)
    session.commit()
    session.refresh(rental)
    logger.info("Rental %s marked returned by renter", rental.id)
    return rental


def confirm_return(session: Session, rental_id: int, owner_id: int) -> RentalRequest:
    rental = get_rental(session, rental_id)
    if rental.owner_id != owner_id:
        raise Forbidden()

    tool = lock_tool(session, rental.tool_id)
    rental = get_rental(session, rental_id, lock=True)
    if rental.status != RentalStatus.returned_pending:
        raise InvalidState("Rental is not waiting for return confirmation")

    rental.status = RentalStatus.completed
    rental.completed_at = utcnow()
    tool.available = True
    session.add(rental)
    session.add(tool)
    session.commit()
    session.refresh(rental)
    logger.info("Rental %s completed, tool %s available again", rental.id, tool.id)
    return rental


def list_renter_rentals(
    session: Session, renter_id: int, status: Optional[RentalStatus] = None
) -> list[RentalRequest]:
    query = select(RentalRequest).where(RentalRequest.renter_id == renter_id)
    if status:
        query = query.where(RentalRequest.status == status)
    return list(session.exec(query.order_by(RentalRequest.id.desc())).all())


def list_owner_rentals(
    session: Session, owner_id: int, status: Optional[RentalStatus] = None
) -> list[RentalRequest]:
    query = select(RentalRequest).where(RentalRequest.owner_id == owner_id)
    if status:
        query = query.where(RentalRequest.status == status)
    return list(session.exec(query.order_by(RentalRequest.id.desc())).all())


def get_rental_for_participant(
    session: Session, rental_id: int, user_id: int
) -> RentalRequest:
    rental = get_rental(session, rental_id)
    if user_id not in (rental.owner_id, rental.renter_id):
        raise Forbidden()
    return rental
