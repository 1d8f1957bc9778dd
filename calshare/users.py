from __future__ import annotations

from pathlib import Path
from typing import Optional
import io
import types
import uuid
import bcrypt

# Work around older Windows wheels lacking ``_bcrypt.__about__`` by
# populating it with the package version so Passlib's backend check
# doesn't emit a traceback. This is harmless if the attributes already
# exist.
if not hasattr(bcrypt, "__about__"):
    bcrypt.__about__ = types.SimpleNamespace(__version__=bcrypt.__version__)
if hasattr(bcrypt, "_bcrypt") and not hasattr(bcrypt._bcrypt, "__about__"):
    bcrypt._bcrypt.__about__ = bcrypt.__about__

from passlib.context import CryptContext
from sqlmodel import Field, Session, SQLModel, select
from sqlalchemy import Column, LargeBinary, text

# Imported so their tables are registered on ``SQLModel.metadata``.
from .calendar import Calendar, is_valid_email, normalize_email  # noqa: F401
from .events import Event  # noqa: F401
from .notifications import Notification  # noqa: F401
from .settings import Setting  # noqa: F401
from sqlalchemy.exc import OperationalError
from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from PIL import Image, ImageDraw


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MIN_PASSWORD_LENGTH = 6


def new_uid() -> str:
    return uuid.uuid4().hex


class User(SQLModel, table=True):
    """Database representation of a user."""

    id: Optional[int] = Field(default=None, primary_key=True)
    uid: str = Field(default_factory=new_uid, index=True, unique=True)
    email: str = Field(index=True, unique=True)
    display_name: str = ""
    password_hash: str
    profile_picture: Optional[bytes] = Field(
        default=None, sa_column=Column(LargeBinary)
    )


def hash_secret(secret: str) -> str:
    """Hash a password using bcrypt."""

    return pwd_context.hash(secret)


def process_profile_picture(data: bytes) -> bytes:
    """Crop an uploaded picture to a 128x128 circle and encode it as PNG."""

    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGBA")
        width, height = img.size
        size = min(width, height)
        left = (width - size) // 2
        top = (height - size) // 2
        img = img.crop((left, top, left + size, top + size))
        img = img.resize((128, 128))
        mask = Image.new("L", (128, 128), 0)
        draw = ImageDraw.Draw(mask)
        draw.ellipse((0, 0, 128, 128), fill=255)
        img.putalpha(mask)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()


class UserStore:
    """CRUD helper for :class:`User` objects."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, uid: str) -> Optional[User]:
        with Session(self.engine) as session:
            return session.exec(select(User).where(User.uid == uid)).first()

    def get_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        if not email:
            return None
        with Session(self.engine) as session:
            return session.exec(select(User).where(User.email == email)).first()

    def create(
        self,
        email: str,
        password: str,
        display_name: str = "",
        profile_picture: Optional[bytes] = None,
    ) -> User:
        """Register a new user; raises ``ValueError`` when that is not possible."""
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValueError("Please enter a valid email address")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        with Session(self.engine) as session:
            if session.exec(select(User).where(User.email == email)).first():
                raise ValueError("An account with that email already exists")
            user = User(
                email=email,
                display_name=(display_name or "").strip() or email.split("@")[0],
                password_hash=hash_secret(password),
                profile_picture=profile_picture,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def update_profile(
        self,
        uid: str,
        display_name: Optional[str] = None,
        password: Optional[str] = None,
        profile_picture: Optional[bytes] = None,
    ) -> Optional[User]:
        with Session(self.engine) as session:
            user = session.exec(select(User).where(User.uid == uid)).first()
            if not user:
                return None
            if display_name is not None:
                display_name = display_name.strip()
                if not display_name:
                    raise ValueError("Display name cannot be empty")
                user.display_name = display_name
                owned = session.exec(select(Calendar).where(Calendar.owner_id == uid)).all()
                for calendar in owned:
                    calendar.owner_name = display_name
                    session.add(calendar)
            if password:
                if len(password) < MIN_PASSWORD_LENGTH:
                    raise ValueError(
                        f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
                    )
                user.password_hash = hash_secret(password)
            if profile_picture is not None:
                user.profile_picture = profile_picture
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def delete(self, uid: str) -> None:
        with Session(self.engine) as session:
            user = session.exec(select(User).where(User.uid == uid)).first()
            if user:
                session.delete(user)
                session.commit()

    def verify(self, email: str, password: str) -> Optional[User]:
        user = self.get_by_email(email)
        if not user or not user.password_hash:
            return None
        if pwd_context.verify(password, user.password_hash):
            return user
        return None


def init_db(engine) -> None:
    """Create tables on first run and verify the schema revision."""

    db_path = Path(engine.url.database)
    first_run = not db_path.exists()

    cfg = Config(str(Path(__file__).resolve().parent.parent / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parent.parent / "migrations"))
    cfg.set_main_option("sqlalchemy.url", str(engine.url))
    if first_run:
        SQLModel.metadata.create_all(engine)
        command.stamp(cfg, "head")

    script = ScriptDirectory.from_config(cfg)
    head = script.get_current_head()
    with engine.connect() as conn:
        try:
            row = conn.execute(text("SELECT version_num FROM alembic_version")).first()
        except OperationalError as exc:
            raise RuntimeError(
                "Database schema is missing Alembic version information. "
                "Run 'uv run alembic upgrade head' before starting the server. "
                "See README.md under 'Database migrations'."
            ) from exc
    if not row or row[0] != head:
        raise RuntimeError(
            "Database schema is out of date. Run 'uv run alembic upgrade head' "
            "before starting the server. See README.md under 'Database migrations'."
        )
