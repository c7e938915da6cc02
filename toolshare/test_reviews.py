import pytest
from sqlmodel import select

from . import rentals, reviews
from .conftest import day, make_tool, make_user
from .errors import Forbidden, NotFound, Validation
from .models import Review


def complete_rental(session, tool, owner, renter, start="2024-01-01", end="2024-01-05"):
    rental = rentals.request_rental(session, tool.id, renter.id, day(start), day(end))
    rentals.approve_rental(session, rental.id, owner.id)
    rentals.mark_returned(session, rental.id, renter.id)
    return rentals.confirm_return(session, rental.id, owner.id)


def test_review_requires_completed_rental(session, tool, owner, renter):
    with pytest.raises(Forbidden):
        reviews.submit_review(session, tool.id, renter.id, 5)

    rental = rentals.request_rental(
        session, tool.id, renter.id, day("2024-01-01"), day("2024-01-02")
    )
    rentals.approve_rental(session, rental.id, owner.id)
    rentals.mark_returned(session, rental.id, renter.id)

    assert reviews.has_completed_rental(session, tool.id, renter.id) is False
    with pytest.raises(Forbidden):
        reviews.submit_review(session, tool.id, renter.id, 5)


def test_review_after_completion(session, tool, owner, renter):
    complete_rental(session, tool, owner, renter)

    assert reviews.has_completed_rental(session, tool.id, renter.id) is True
    review = reviews.submit_review(session, tool.id, renter.id, 4, "Worked fine")

    assert review.rating == 4
    assert review.comment == "Worked fine"
    assert review.tool_id == tool.id
    assert review.reviewer_id == renter.id


def test_resubmission_overwrites(session, tool, owner, renter):
    complete_rental(session, tool, owner, renter)

    first = reviews.submit_review(session, tool.id, renter.id, 2, "Blunt bit")
    second = reviews.submit_review(session, tool.id, renter.id, 5)

    assert second.id == first.id
    assert second.rating == 5
    assert second.comment is None
    rows = session.exec(
        select(Review)
        .where(Review.tool_id == tool.id)
        .where(Review.reviewer_id == renter.id)
    ).all()
    assert len(rows) == 1


def test_completed_rental_of_other_tool_does_not_count(session, tool, owner, renter):
    other_tool = make_tool(owner, name="Hedge trimmer")
    complete_rental(session, other_tool, owner, renter)

    with pytest.raises(Forbidden):
        reviews.submit_review(session, tool.id, renter.id, 3)


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_rating_out_of_bounds(session, tool, owner, renter, rating):
    complete_rental(session, tool, owner, renter)

    with pytest.raises(Validation):
        reviews.submit_review(session, tool.id, renter.id, rating)


@pytest.mark.parametrize("rating", [True, 4.0, "5"])
def test_rating_must_be_an_integer(session, tool, owner, renter, rating):
    complete_rental(session, tool, owner, renter)

    with pytest.raises(Validation):
        reviews.submit_review(session, tool.id, renter.id, rating)


def test_review_unknown_tool(session, renter):
    with pytest.raises(NotFound):
        reviews.submit_review(session, 987654, renter.id, 3)


def test_summary_and_listing(session, owner):
    tool = make_tool(owner, name="Pressure washer")
    assert reviews.review_summary(session, tool.id).review_count == 0
    assert reviews.review_summary(session, tool.id).avg_rating == 0

    first, second = make_user("Alice"), make_user("Bob")
    complete_rental(session, tool, owner, first, "2024-02-01", "2024-02-02")
    complete_rental(session, tool, owner, second, "2024-02-03", "2024-02-04")
    reviews.submit_review(session, tool.id, first.id, 5)
    reviews.submit_review(session, tool.id, second.id, 2)

    summary = reviews.review_summary(session, tool.id)
    assert summary.review_count == 2
    assert summary.avg_rating == pytest.approx(3.5)
    assert len(reviews.list_reviews(session, tool.id)) == 2
