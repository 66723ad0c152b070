from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every loyalty model."""


# Import models so Base.metadata is complete for Alembic and create_all.
import loyalty_api.models  # noqa: E402,F401
