from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models.

    Timestamps are stored as naive UTC (see rag_mse.utils.clock).
    """
    type_annotation_map = {
        datetime: DateTime(timezone=False),
    }
