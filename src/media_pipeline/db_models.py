from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import declarative_base, declared_attr

from .state import MediaKind, OutputStatus, SubmissionStatus

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite stores datetimes without an offset."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Article(Base):
    __tablename__ = "Article"
    id = Column(String, primary_key=True)
    organizationId = Column(String, nullable=False)  # noqa: N815
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    createdAt = Column(DateTime, default=utcnow)  # noqa: N815


class Submission(Base):
    __tablename__ = "Submission"
    id = Column(String, primary_key=True)
    articleId = Column(String, ForeignKey("Article.id"), nullable=False)  # noqa: N815
    organizationId = Column(String, nullable=False)  # noqa: N815
    language = Column(String, nullable=False, default="ENGLISH")
    status = Column(Enum(SubmissionStatus), default=SubmissionStatus.PENDING, nullable=False)
    createdAt = Column(DateTime, default=utcnow)  # noqa: N815
    updatedAt = Column(DateTime, default=utcnow, onupdate=utcnow)  # noqa: N815


class OutputColumns:
    """Columns every Output table carries."""

    id = Column(String, primary_key=True)
    status = Column(Enum(OutputStatus), default=OutputStatus.PENDING, nullable=False)
    error = Column(Text, nullable=True)
    script = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)
    createdAt = Column(DateTime, default=utcnow)  # noqa: N815
    updatedAt = Column(DateTime, default=utcnow, onupdate=utcnow, index=True)  # noqa: N815

    @declared_attr
    def submissionId(cls):  # noqa: N802, N805
        return Column(String, ForeignKey("Submission.id"), nullable=False, index=True)


class AudioOutput(OutputColumns, Base):
    __tablename__ = "AudioOutput"
    audioUrl = Column(String, nullable=True)  # noqa: N815
    duration = Column(Integer, nullable=True)
    voiceId = Column(String, nullable=True)  # noqa: N815


class VideoOutput(OutputColumns, Base):
    __tablename__ = "VideoOutput"
    title = Column(String, nullable=True)
    renderJobId = Column(String, nullable=True)  # noqa: N815
    captionJobId = Column(String, nullable=True)  # noqa: N815
    characterId = Column(String, nullable=True)  # noqa: N815
    characterType = Column(String, nullable=True)  # noqa: N815  avatar | talking_photo
    voiceId = Column(String, nullable=True)  # noqa: N815
    captionsEnabled = Column(Boolean, nullable=False, default=True)  # noqa: N815
    generateQuestions = Column(Boolean, nullable=False, default=True)  # noqa: N815
    startBumperUrl = Column(String, nullable=True)  # noqa: N815
    endBumperUrl = Column(String, nullable=True)  # noqa: N815
    musicUrl = Column(String, nullable=True)  # noqa: N815
    musicVolume = Column(Float, nullable=True)  # noqa: N815
    videoUrl = Column(String, nullable=True)  # noqa: N815
    duration = Column(Integer, nullable=True)
    transcript = Column(Text, nullable=True)
    wordTimings = Column(JSON, nullable=True)  # noqa: N815
    questions = Column(JSON, nullable=True)

    # A correlation id identifies at most one in-flight video.
    __table_args__ = (
        Index(
            "uq_video_render_job_processing",
            "renderJobId",
            unique=True,
            sqlite_where=text("status = 'PROCESSING'"),
            postgresql_where=text("status = 'PROCESSING'"),
        ),
        Index(
            "uq_video_caption_job_processing",
            "captionJobId",
            unique=True,
            sqlite_where=text("status = 'PROCESSING'"),
            postgresql_where=text("status = 'PROCESSING'"),
        ),
    )


class PodcastOutput(OutputColumns, Base):
    __tablename__ = "PodcastOutput"
    audioUrl = Column(String, nullable=True)  # noqa: N815
    duration = Column(Integer, nullable=True)
    hostVoiceId = Column(String, nullable=True)  # noqa: N815
    guestVoiceId = Column(String, nullable=True)  # noqa: N815


class QuizOutput(OutputColumns, Base):
    __tablename__ = "QuizOutput"
    questions = Column(JSON, nullable=True)


class InteractivePodcastOutput(OutputColumns, Base):
    __tablename__ = "InteractivePodcastOutput"
    audioUrl = Column(String, nullable=True)  # noqa: N815
    duration = Column(Integer, nullable=True)
    voiceId = Column(String, nullable=True)  # noqa: N815
    transcript = Column(Text, nullable=True)
    wordTimings = Column(JSON, nullable=True)  # noqa: N815
    questions = Column(JSON, nullable=True)


OUTPUT_TABLES = {
    MediaKind.AUDIO: AudioOutput,
    MediaKind.VIDEO: VideoOutput,
    MediaKind.PODCAST: PodcastOutput,
    MediaKind.QUIZ: QuizOutput,
    MediaKind.INTERACTIVE_PODCAST: InteractivePodcastOutput,
}

# Correlation columns per kind, in pipeline order
CORRELATION_FIELDS = {
    MediaKind.VIDEO: ("renderJobId", "captionJobId"),
}
