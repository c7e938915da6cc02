"""Conversation lookup keyed by rental.

Message storage and delivery live outside this service; only the rental's
owner and renter may open its conversation.
"""

from sqlmodel import Session, select

from .models import Conversation
from .rentals import get_rental_for_participant


def get_or_create_conversation(
    session: Session, rental_id: int, user_id: int
) -> Conversation:
    rental = get_rental_for_participant(session, rental_id, user_id)

    conversation = session.exec(
        select(Conversation).where(Conversation.rental_id == rental.id)
    ).first()
    if conversation:
        return conversation

    conversation = Conversation(
        rental_id=rental.id, owner_id=rental.owner_id, renter_id=rental.renter_id
    )
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    return conversation
