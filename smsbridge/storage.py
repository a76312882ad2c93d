import logging
from datetime import datetime
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from smsbridge.config import settings
from smsbridge.utils import mask_phone, parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite with FastAPI's threadpool;
# timeout bounds how long a write waits on a locked database
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={
        "check_same_thread": False,
        "timeout": settings.STORE_TIMEOUT_SECONDS,
    },
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables and seeding the agent user
    and the SMS group conversation. Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from smsbridge import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            seed_defaults(db)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def seed_defaults(db: Session) -> None:
    """Create the agent user and SMS conversation if they are missing."""
    from smsbridge.models import Conversation, ConversationParticipant, User

    if db.get(User, settings.AGENT_USER_ID) is None:
        db.add(User(
            id=settings.AGENT_USER_ID,
            display_name=settings.AGENT_NAME,
            is_agent=True,
        ))
        logger.info("Seeded agent user")

    if db.get(Conversation, settings.SMS_CONVERSATION_ID) is None:
        db.add(Conversation(
            id=settings.SMS_CONVERSATION_ID,
            mode=settings.SMS_CONVERSATION_MODE,
            title="SMS Group Chat",
        ))
        db.flush()
        db.add(ConversationParticipant(
            conversation_id=settings.SMS_CONVERSATION_ID,
            user_id=settings.AGENT_USER_ID,
            role="agent",
        ))
        logger.info("Seeded SMS conversation")

    db.commit()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            db.execute(text("SELECT COUNT(*) FROM messages"))
            db.execute(text("SELECT COUNT(*) FROM notification_log"))
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# User Repository Functions
# =============================================================================

def get_user(db: Session, user_id: str):
    from smsbridge.models import User

    return db.get(User, user_id)


def get_or_create_user_by_phone(db: Session, phone: str, display_name: Optional[str] = None):
    """
    Find the user owning `phone`, creating one if none exists.

    A new user also gets an SMS-enabled notification preference for the same
    number. Safe to call concurrently: a losing insert rolls back and
    re-reads the winner's row.

    Returns:
        Tuple of (user, created)
    """
    from smsbridge.models import NotificationPreference, User

    user = db.query(User).filter(User.phone_number == phone).first()
    if user is not None:
        return user, False

    logger.info(f"Creating user for phone {mask_phone(phone)}")
    try:
        user = User(phone_number=phone, display_name=display_name or phone)
        db.add(user)
        db.flush()
        db.add(NotificationPreference(
            user_id=user.id,
            sms_enabled=True,
            phone_number=phone,
        ))
        db.commit()
        return user, True
    except IntegrityError:
        db.rollback()
        logger.info(f"Concurrent create for phone {mask_phone(phone)}, re-reading")
        user = db.query(User).filter(User.phone_number == phone).one()
        return user, False


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation(db: Session, conversation_id: str):
    from smsbridge.models import Conversation

    return db.get(Conversation, conversation_id)


def ensure_participant(db: Session, conversation_id: str, user_id: str, role: str = "member") -> bool:
    """
    Add a user to a conversation unless already present.

    Returns:
        True if a participant row was inserted, False if it already existed.
    """
    from smsbridge.models import ConversationParticipant

    existing = (
        db.query(ConversationParticipant)
        .filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
        .first()
    )
    if existing is not None:
        return False

    try:
        db.add(ConversationParticipant(conversation_id=conversation_id, user_id=user_id, role=role))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False


def get_participants(db: Session, conversation_id: str) -> list:
    """Return the User rows participating in a conversation."""
    from smsbridge.models import ConversationParticipant, User

    return (
        db.query(User)
        .join(ConversationParticipant, ConversationParticipant.user_id == User.id)
        .filter(ConversationParticipant.conversation_id == conversation_id)
        .order_by(ConversationParticipant.id.asc())
        .all()
    )


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    conversation_id: str,
    sender_id: str,
    content_raw: str,
    is_from_agent: bool = False,
    source: str = "app",
    provider_sid: Optional[str] = None,
) -> Tuple[Optional[object], bool]:
    """
    Create a new message in the database (idempotent on provider_sid).

    Returns:
        Tuple of (message, is_duplicate)
        - (Message, False): Message created successfully
        - (None, True): provider_sid already stored
    """
    from smsbridge.models import Message

    logger.info(f"Creating message: conversation={conversation_id}, source={source}, agent={is_from_agent}")

    try:
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content_raw=content_raw,
            is_from_agent=is_from_agent,
            source=source,
            provider_sid=provider_sid,
            created_at=utc_now_iso(),
        )
        db.add(message)
        db.commit()
        logger.info(f"Message created successfully: {message.id}")
        return message, False

    except IntegrityError:
        # provider_sid already exists - redelivery of an inbound message
        db.rollback()
        logger.info(f"Duplicate message detected: provider_sid={provider_sid}")
        return None, True


def get_message(db: Session, message_id: str):
    from smsbridge.models import Message

    return db.get(Message, message_id)


def get_recent_messages(db: Session, conversation_id: str, limit: int = 20) -> list:
    """
    Return the most recent `limit` messages of a conversation, oldest first.
    """
    from smsbridge.models import Message

    newest_first = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(newest_first))


def get_messages(
    db: Session,
    conversation_id: str,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve a conversation's messages with pagination.

    Returns:
        Tuple of (messages list, total count in the conversation)
    """
    from smsbridge.models import Message

    logger.info(f"Querying messages: conversation={conversation_id}, limit={limit}, offset={offset}")

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()

    # Ordering: created_at ASC, id ASC (deterministic)
    messages = (
        query.order_by(Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


# =============================================================================
# Notification Repository Functions
# =============================================================================

def get_notification_preference(db: Session, user_id: str):
    from smsbridge.models import NotificationPreference

    return db.get(NotificationPreference, user_id)


def get_last_sent_at(db: Session, user_id: str, channel: str = "sms") -> Optional[datetime]:
    """Timestamp of the most recent successful send to a user, if any."""
    from smsbridge.models import NotificationLog

    sent_at = (
        db.query(NotificationLog.sent_at)
        .filter(NotificationLog.user_id == user_id, NotificationLog.channel == channel)
        .order_by(NotificationLog.sent_at.desc())
        .limit(1)
        .scalar()
    )
    return parse_iso(sent_at) if sent_at else None


def record_notification(
    db: Session,
    user_id: str,
    message_preview: str,
    phone_number: str,
    channel: str = "sms",
    sent_at: Optional[str] = None,
):
    """Append a notification log entry. Only call after a confirmed send."""
    from smsbridge.models import NotificationLog

    entry = NotificationLog(
        user_id=user_id,
        channel=channel,
        message_preview=message_preview,
        phone_number=phone_number,
        sent_at=sent_at or utc_now_iso(),
    )
    db.add(entry)
    db.commit()
    return entry
