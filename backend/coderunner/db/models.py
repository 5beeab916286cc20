from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import Text, String, TIMESTAMP, func
from uuid import uuid4
from coderunner.db.enums import JobState

Base = declarative_base()


def gen_id():
    return str(uuid4())


class Job(Base):
    __tablename__ = "jobs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=gen_id)
    language: Mapped[str] = mapped_column(String, index=True)
    source_code: Mapped[str] = mapped_column(Text)
    stdin: Mapped[str] = mapped_column(Text, default="")
    client_id: Mapped[str] = mapped_column(String)
    state: Mapped[str] = mapped_column(String, default=JobState.queued.value, index=True)
    handle: Mapped[str | None] = mapped_column(String, default=None)
    claimed_by: Mapped[str | None] = mapped_column(String, default=None)
    output: Mapped[str | None] = mapped_column(Text, default=None)
    execution_time_ms: Mapped[int | None] = mapped_column(default=None)
    failure_kind: Mapped[str | None] = mapped_column(String, default=None)
    failure_detail: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[str] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    started_at: Mapped[str | None] = mapped_column(TIMESTAMP(timezone=True))
    finished_at: Mapped[str | None] = mapped_column(
        TIMESTAMP(timezone=True), index=True
    )
