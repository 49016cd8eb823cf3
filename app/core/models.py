import uuid

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    String,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# =========================
# Question
# =========================
class Question(Base):
    """
    A natural-language question and the SQL generated for it.

    The SQL text and plan are filled in by the question job once planning
    succeeds; until then the title reads "Processing...".
    """

    __tablename__ = "questions"

    id = Column(String, primary_key=True, default=_uuid)

    question_content = Column(Text, nullable=False)
    title = Column(String, nullable=False)
    sql_text = Column(Text, nullable=False, server_default="")
    sql_hash = Column(String, nullable=False, server_default="", index=True)
    plan = Column(JSON, nullable=True)

    type = Column(String, nullable=False, server_default="user")  # user | suggested

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    job_metadata = relationship(
        "JobMetadata",
        back_populates="question",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="JobMetadata.created_at.desc()",
    )

    result = relationship(
        "QuestionResult",
        back_populates="question",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    requests = relationship(
        "QuestionRequest",
        back_populates="question",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Job metadata (terminal state of a question job)
# =========================
class JobMetadata(Base):
    __tablename__ = "job_metadata"

    id = Column(String, primary_key=True, default=_uuid)

    question_id = Column(
        String,
        ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    job_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, server_default="pending")
    failed_reason = Column(Text, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    question = relationship("Question", back_populates="job_metadata")


# =========================
# Question result (rows + chart config)
# =========================
class QuestionResult(Base):
    __tablename__ = "question_results"

    id = Column(String, primary_key=True, default=_uuid)

    question_id = Column(
        String,
        ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # {"rows": [...], "chart_config": {...}}
    result = Column(JSON, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    question = relationship("Question", back_populates="result")


# =========================
# Question request (one row per time somebody asked)
# =========================
class QuestionRequest(Base):
    """Request log used to promote popular questions to suggestions."""

    __tablename__ = "question_requests"
    __table_args__ = (
        Index("question_requests_question_id_created_at_idx", "question_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=_uuid)

    question_id = Column(
        String,
        ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False,
    )
    source = Column(String, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    question = relationship("Question", back_populates="requests")
