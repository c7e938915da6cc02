from contextlib import asynccontextmanager
from typing import Annotated
from fastapi import Depends, FastAPI, HTTPException, Request, status, Query
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pwdlib import PasswordHash
from pydantic import BaseModel
import jwt
from jwt.exceptions import InvalidTokenError
from datetime import datetime, timedelta, timezone
from sqlmodel import Session, SQLModel, select
import logging
import os
from typing import Optional

from .models import (
    User,
    UserCreate,
    UserUpdate,
    UserDelete,
    UserRead,
    Tool,
    ToolCreate,
    ToolUpdate,
    ToolRead,
    RentalRequest,
    RentalCreate,
    RentalRead,
    RentalStatus,
    Review,
    ReviewCreate,
    ReviewRead,
    ReviewSummary,
    ReviewEligibility,
    Conversation,
    ConversationRead,
)
from .database import engine, get_session
from .errors import Conflict, Forbidden, NotFound
from . import chat, rentals, reviews

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))
ALGORITHM = os.getenv("ALGORITHM", "HS256")


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    email: str | None = None


password_hash = PasswordHash.recommended()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


@asynccontextmanager
async def lifespan(app: FastAPI):
    SQLModel.metadata.create_all(engine)
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Tool rental marketplace API",
    description="API to list tools, request and manage rentals, and review tools after completed rentals.",
    version="0.3.0",
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return password_hash.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return password_hash.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    if not SECRET_KEY or SECRET_KEY == "":
        raise ValueError("SECRET_KEY is missing")
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_user_by_email(session: Session, email: str):
    statement = select(User).where(User.email == email)
    return session.exec(statement).first()


def authenticate_user(session: Session, email: str, password: str):
    user = get_user_by_email(session, email)
    if not user:
        return False
    if not verify_password(password, user.hashed_password):
        return False
    return user


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Session = Depends(get_session),
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email = payload.get("sub")
        if email is None:
            raise credentials_exception
        token_data = TokenData(email=email)
    except InvalidTokenError:
        raise credentials_exception
    user = get_user_by_email(session, email=token_data.email)
    if user is None:
        raise credentials_exception
    return user


def get_owned_tool(session: Session, tool_id: int, user: User) -> Tool:
    tool = session.get(Tool, tool_id)
    if not tool:
        raise NotFound("Tool not found")
    if tool.owner_id != user.id:
        raise Forbidden("Only the owner can change this tool")
    return tool


def purge_rentals(session: Session, rental_list) -> None:
    for rental in rental_list:
        conversation = session.exec(
            select(Conversation).where(Conversation.rental_id == rental.id)
        ).first()
        if conversation:
            session.delete(conversation)
    session.flush()
    for rental in rental_list:
        session.delete(rental)
    session.flush()


def purge_tool(session: Session, tool: Tool) -> None:
    """Delete a tool with its rentals, conversations and reviews. No commit."""
    purge_rentals(
        session,
        session.exec(select(RentalRequest).where(RentalRequest.tool_id == tool.id)).all(),
    )
    for review in session.exec(select(Review).where(Review.tool_id == tool.id)).all():
        session.delete(review)
    session.flush()
    session.delete(tool)


@app.get("/health", summary="Health check", tags=["Service"])
def health_check():
    return {"status": "ok"}


# --- Users ---
@app.post(
    "/register",
    response_model=UserRead,
    summary="Register new user",
    response_description="User data",
    tags=["Users"],
)
def register_user(user: UserCreate, session: Session = Depends(get_session)):
    """
    Register new user.
    """
    existing_user = get_user_by_email(session, user.email)
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already exists")

    hashed_password = get_password_hash(user.password)
    db_user = User(
        name=user.name,
        email=user.email,
        phone=user.phone,
        address=user.address,
        hashed_password=hashed_password,
    )
    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    return db_user


@app.post(
    "/token", summary="Log in", response_description="Bearer token", tags=["Users"]
)
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session),
) -> Token:
    """Obtain token for login. Use the account email as username."""
    user = authenticate_user(session, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.email}, expires_delta=access_token_expires
    )
    return Token(access_token=access_token, token_type="bearer")


@app.get(
    "/users/me",
    response_model=UserRead,
    summary="Get current user",
    response_description="Current user data",
    tags=["Users"],
)
def read_users_me(current_user: Annotated[User, Depends(get_current_user)]):
    """Get current user data."""
    return current_user


@app.put(
    "/users/me",
    response_model=UserRead,
    summary="Update current user",
    response_description="Updated user data",
    tags=["Users"],
)
def update_users_me(
    updated_user: UserUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Update profile fields. Setting **new_password** requires the correct
    **current_password**. Tokens carry the email, so changing it means
    logging in again.
    """
    user = session.get(User, current_user.id)
    changes = updated_user.model_dump(
        exclude_unset=True, exclude={"current_password", "new_password"}
    )

    if "email" in changes and changes["email"] != user.email:
        if get_user_by_email(session, changes["email"]):
            raise HTTPException(status_code=400, detail="Email already exists")

    if updated_user.new_password is not None:
        if not updated_user.current_password:
            raise HTTPException(
                status_code=400,
                detail="Current password is required to set a new password",
            )
        if not verify_password(updated_user.current_password, user.hashed_password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Current password is incorrect",
            )
        user.hashed_password = get_password_hash(updated_user.new_password)

    for key, value in changes.items():
        setattr(user, key, value)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@app.delete(
    "/users/me",
    summary="Delete current user",
    tags=["Users"],
)
def delete_users_me(
    confirmation: UserDelete,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Delete the account with its tools, rentals and reviews. Requires the
    password, and is refused while the user owns or rents anything with a
    rental in progress.
    """
    user = session.get(User, current_user.id)
    if not verify_password(confirmation.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect password"
        )
    if rentals.user_has_open_rentals(session, user.id):
        raise Conflict("User has rentals in progress")

    for tool in session.exec(select(Tool).where(Tool.owner_id == user.id)).all():
        purge_tool(session, tool)
    purge_rentals(
        session,
        session.exec(
            select(RentalRequest).where(RentalRequest.renter_id == user.id)
        ).all(),
    )
    for review in session.exec(select(Review).where(Review.reviewer_id == user.id)).all():
        session.delete(review)
    session.flush()
    user_id = user.id
    session.delete(user)
    session.commit()
    logger.info("User %s deleted", user_id)
    return {"ok": True}


# --- Tool Catalog ---
@app.post(
    "/tools",
    response_model=ToolRead,
    status_code=201,
    summary="List a new tool for rent",
    response_description="Tool data",
    tags=["Tools"],
)
def create_tool(
    tool: ToolCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Add a tool owned by the current user. New tools start out available."""
    db_tool = Tool(**tool.model_dump(), owner_id=current_user.id, available=True)
    session.add(db_tool)
    session.commit()
    session.refresh(db_tool)
    return db_tool


@app.get(
    "/tools",
    response_model=list[ToolRead],
    summary="Browse tools",
    response_description="List of tools",
    tags=["Tools"],
)
def list_tools(
    session: Session = Depends(get_session),
    name: Optional[str] = Query(
        None,
        description="Filter by tool name",
        min_length=1,
        max_length=120,
        example="drill",
    ),
    category: Optional[str] = Query(
        None,
        description="Filter by tool category",
        min_length=1,
        max_length=50,
        example="power tools",
    ),
    available: Optional[bool] = Query(
        None, description="Only show tools that are (or are not) available"
    ),
):
    """
    List all tools, newest first, with optional filtering.

    - **name**: Optional filter by name (partial match)
    - **category**: Optional filter by category (partial match)
    - **available**: Optional filter on availability
    """
    query = select(Tool)

    if name:
        query = query.where(Tool.name.contains(name))
    if category:
        query = query.where(Tool.category.contains(category))
    if available is not None:
        query = query.where(Tool.available == available)

    return session.exec(query.order_by(Tool.id.desc())).all()


@app.get(
    "/tools/mine",
    response_model=list[ToolRead],
    summary="List my tools",
    response_description="List of tools owned by the current user",
    tags=["Tools"],
)
def list_my_tools(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    query = select(Tool).where(Tool.owner_id == current_user.id)
    return session.exec(query.order_by(Tool.id.desc())).all()


@app.get(
    "/tools/{id}",
    response_model=ToolRead,
    summary="Get tool",
    response_description="Tool data",
    tags=["Tools"],
)
def get_tool(id: int, session: Session = Depends(get_session)):
    tool = session.get(Tool, id)
    if not tool:
        raise NotFound("Tool not found")
    return tool


@app.put(
    "/tools/{id}",
    response_model=ToolRead,
    summary="Update tool",
    response_description="Updated tool data",
    tags=["Tools"],
)
def update_tool(
    id: int,
    updated_tool: ToolUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Update a tool's listing. Owner only. Availability follows the rental
    lifecycle and cannot be edited here.
    - **id**: Unique ID of tool.
    """
    tool = get_owned_tool(session, id, current_user)
    for key, value in updated_tool.model_dump(exclude_unset=True).items():
        setattr(tool, key, value)
    session.add(tool)
    session.commit()
    session.refresh(tool)
    return tool


@app.delete(
    "/tools/{id}",
    summary="Delete tool",
    tags=["Tools"],
)
def delete_tool(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Delete a tool along with its finished rentals and reviews. Owner only.
    Refused while the tool has pending, approved or returned rentals.
    - **id**: Unique ID of tool.
    """
    tool = get_owned_tool(session, id, current_user)
    if rentals.has_open_rentals(session, tool.id):
        raise Conflict("Tool has rentals in progress")

    purge_tool(session, tool)
    session.commit()
    return {"ok": True}


# --- Rentals ---
@app.post(
    "/rentals",
    response_model=RentalRead,
    status_code=201,
    summary="Request a rental",
    response_description="Rental request data",
    tags=["Rentals"],
)
def create_rental(
    rental: RentalCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Request to rent a tool for a date range. The request starts out pending.
    - **tool_id**: Tool requested
    - **start_date**: First day of the rental
    - **end_date**: Last day of the rental (inclusive)
    """
    return rentals.request_rental(
        session, rental.tool_id, current_user.id, rental.start_date, rental.end_date
    )


@app.get(
    "/rentals/mine",
    response_model=list[RentalRead],
    summary="List my rentals",
    response_description="Rentals requested by the current user",
    tags=["Rentals"],
)
def list_my_rentals(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    status: Optional[RentalStatus] = Query(None, description="Filter by status"),
):
    return rentals.list_renter_rentals(session, current_user.id, status)


@app.get(
    "/rentals/inbox",
    response_model=list[RentalRead],
    summary="List requests for my tools",
    response_description="Rental requests for tools owned by the current user",
    tags=["Rentals"],
)
def list_rental_inbox(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    status: Optional[RentalStatus] = Query(None, description="Filter by status"),
):
    return rentals.list_owner_rentals(session, current_user.id, status)


@app.get(
    "/rentals/{id}",
    response_model=RentalRead,
    summary="Get rental",
    response_description="Rental request data",
    tags=["Rentals"],
)
def get_rental(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Get a rental request. Visible to the tool owner and the renter only."""
    return rentals.get_rental_for_participant(session, id, current_user.id)


@app.post(
    "/rentals/{id}/approve",
    response_model=RentalRead,
    summary="Approve rental request",
    tags=["Rentals"],
)
def approve_rental(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Owner only. Fails with 409 if the dates overlap an approved rental."""
    return rentals.approve_rental(session, id, current_user.id)


@app.post(
    "/rentals/{id}/reject",
    response_model=RentalRead,
    summary="Reject rental request",
    tags=["Rentals"],
)
def reject_rental(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return rentals.reject_rental(session, id, current_user.id)


@app.post(
    "/rentals/{id}/return",
    response_model=RentalRead,
    summary="Mark rental returned",
    tags=["Rentals"],
)
def mark_rental_returned(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Renter only. The owner still has to confirm the return."""
    return rentals.mark_returned(session, id, current_user.id)


@app.post(
    "/rentals/{id}/confirm-return",
    response_model=RentalRead,
    summary="Confirm rental return",
    tags=["Rentals"],
)
def confirm_rental_return(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Owner only. Completes the rental and makes the tool available again."""
    return rentals.confirm_return(session, id, current_user.id)


@app.get(
    "/rentals/{id}/conversation",
    response_model=ConversationRead,
    summary="Open rental conversation",
    tags=["Rentals"],
)
def get_rental_conversation(
    id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return chat.get_or_create_conversation(session, id, current_user.id)


# --- Reviews ---
@app.get(
    "/tools/{tool_id}/reviews",
    response_model=list[ReviewRead],
    summary="List tool reviews",
    tags=["Reviews"],
)
def list_tool_reviews(tool_id: int, session: Session = Depends(get_session)):
    if not session.get(Tool, tool_id):
        raise NotFound("Tool not found")
    return reviews.list_reviews(session, tool_id)


@app.get(
    "/tools/{tool_id}/reviews/summary",
    response_model=ReviewSummary,
    summary="Average rating and review count",
    tags=["Reviews"],
)
def get_review_summary(tool_id: int, session: Session = Depends(get_session)):
    if not session.get(Tool, tool_id):
        raise NotFound("Tool not found")
    return reviews.review_summary(session, tool_id)


@app.get(
    "/tools/{tool_id}/reviews/eligibility",
    response_model=ReviewEligibility,
    summary="Can the current user review this tool",
    tags=["Reviews"],
)
def get_review_eligibility(
    tool_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    if not session.get(Tool, tool_id):
        raise NotFound("Tool not found")
    return ReviewEligibility(
        eligible=reviews.has_completed_rental(session, tool_id, current_user.id)
    )


@app.post(
    "/tools/{tool_id}/reviews",
    response_model=ReviewRead,
    summary="Review a tool",
    response_description="Saved review",
    tags=["Reviews"],
)
def submit_tool_review(
    tool_id: int,
    review: ReviewCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Create or replace the current user's review of a tool. Requires a
    completed rental of the tool.
    - **rating**: 1 to 5
    - **comment**: Optional text
    """
    return reviews.submit_review(
        session, tool_id, current_user.id, review.rating, review.comment
    )


# --- Payments ---
@app.post("/payments/webhook", summary="Payment provider webhook", tags=["Payments"])
async def payment_webhook(request: Request):
    """Acknowledge provider events. No settlement happens here."""
    payload = await request.body()
    logger.info(
        "Payment webhook received: %d bytes, signed=%s",
        len(payload),
        "stripe-signature" in request.headers,
    )
    return {"received": True}
