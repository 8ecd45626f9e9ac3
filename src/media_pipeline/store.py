"""SQLAlchemy-backed access to Articles, Submissions and Outputs.

Every status change is a compare-and-set: the UPDATE is conditioned on the
status the caller observed (plus any correlation id it matched on), so two
writers racing on the same Output cannot both win. The loser either gets
``StaleStateError`` or a ``False`` return, depending on the method.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .db_models import OUTPUT_TABLES, Article, Base, Submission, utcnow
from .errors import CorrelationConflictError, NotFoundError, StaleStateError
from .state import Event, MediaKind, OutputStatus, SubmissionStatus, is_failure_event, transition

logger = logging.getLogger(__name__)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine usable from worker threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


class OutputStore:
    """Row-level reads and conditional writes for the pipeline's domain tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "OutputStore":
        return cls(create_db_engine(url, echo=echo))

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    # --- Articles / Submissions ---

    def create_article(
        self, organization_id: str, title: str, content: str, article_id: Optional[str] = None
    ) -> Dict[str, Any]:
        article_id = article_id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                insert(Article).values(
                    id=article_id,
                    organizationId=organization_id,
                    title=title,
                    content=content,
                    createdAt=utcnow(),
                )
            )
        return self.get_article(article_id)

    def get_article(self, article_id: str) -> Dict[str, Any]:
        return self._fetch_one(Article, article_id, "Article")

    def create_submission(
        self, article_id: str, language: str = "ENGLISH", submission_id: Optional[str] = None
    ) -> Dict[str, Any]:
        article = self.get_article(article_id)
        submission_id = submission_id or str(uuid.uuid4())
        now = utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                insert(Submission).values(
                    id=submission_id,
                    articleId=article_id,
                    organizationId=article["organizationId"],
                    language=language,
                    status=SubmissionStatus.PENDING,
                    createdAt=now,
                    updatedAt=now,
                )
            )
        return self.get_submission(submission_id)

    def get_submission(self, submission_id: str) -> Dict[str, Any]:
        return self._fetch_one(Submission, submission_id, "Submission")

    def set_submission_status(self, submission_id: str, status: SubmissionStatus) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(Submission)
                .where(Submission.id == submission_id)
                .values(status=status, updatedAt=utcnow())
            )

    def list_outputs(self, submission_id: str) -> List[Tuple[MediaKind, Dict[str, Any]]]:
        """All child Outputs of a Submission, across kinds."""
        outputs = []
        with self.engine.connect() as conn:
            for kind, table in OUTPUT_TABLES.items():
                rows = conn.execute(
                    select(table).where(table.submissionId == submission_id)
                ).fetchall()
                outputs.extend((kind, dict(row._mapping)) for row in rows)
        return outputs

    def list_output_statuses(self, submission_id: str) -> List[OutputStatus]:
        statuses = []
        with self.engine.connect() as conn:
            for table in OUTPUT_TABLES.values():
                statuses.extend(
                    OutputStatus(s)
                    for s in conn.execute(
                        select(table.status).where(table.submissionId == submission_id)
                    ).scalars()
                )
        return statuses

    # --- Outputs ---

    def create_output(
        self, kind: MediaKind, submission_id: str, output_id: Optional[str] = None, **fields
    ) -> Dict[str, Any]:
        table = OUTPUT_TABLES[MediaKind(kind)]
        output_id = output_id or str(uuid.uuid4())
        now = utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                insert(table).values(
                    id=output_id,
                    submissionId=submission_id,
                    status=OutputStatus.PENDING,
                    createdAt=now,
                    updatedAt=now,
                    **fields,
                )
            )
        return self.get_output(kind, output_id)

    def get_output(self, kind: MediaKind, output_id: str) -> Dict[str, Any]:
        return self._fetch_one(OUTPUT_TABLES[MediaKind(kind)], output_id, f"{MediaKind(kind).label} output")

    def update_output(
        self,
        kind: MediaKind,
        output_id: str,
        require_status: Optional[OutputStatus] = None,
        **values,
    ) -> None:
        """Write payload fields without changing status.

        Raises:
            StaleStateError: ``require_status`` was given and no longer holds.
            CorrelationConflictError: A correlation id is already held by
                another in-flight Output.
        """
        if "status" in values:
            raise ValueError("Status changes must go through transition_output")
        table = OUTPUT_TABLES[MediaKind(kind)]
        stmt = update(table).where(table.id == output_id)
        if require_status is not None:
            stmt = stmt.where(table.status == require_status)
        values = {"updatedAt": utcnow(), **values}

        rowcount = self._execute_update(stmt.values(**values))
        if rowcount == 0:
            raise StaleStateError(
                f"{MediaKind(kind).label} output {output_id} is not {require_status or 'present'}"
            )

    def transition_output(
        self,
        kind: MediaKind,
        output_id: str,
        event: Event,
        error: Optional[str] = None,
        **values,
    ) -> Dict[str, Any]:
        """Apply ``event`` to the Output's current status and persist the result.

        Raises:
            InvalidTransitionError: No edge for ``event`` from the current status.
            StaleStateError: The status changed between read and write.
        """
        current = OutputStatus(self.get_output(kind, output_id)["status"])
        target = transition(current, event)
        changed = self._compare_and_set(kind, output_id, current, target, event, error, values)
        if not changed:
            raise StaleStateError(
                f"{MediaKind(kind).label} output {output_id} left {current.value} before {event.value}"
            )
        logger.debug("%s %s: %s -> %s", MediaKind(kind).value, output_id, current.value, target.value)
        return self.get_output(kind, output_id)

    def transition_if(
        self,
        kind: MediaKind,
        output_id: str,
        event: Event,
        expected: OutputStatus = OutputStatus.PROCESSING,
        match: Optional[Dict[str, Any]] = None,
        stale_before: Optional[datetime] = None,
        error: Optional[str] = None,
        **values,
    ) -> bool:
        """Conditional transition for racing writers (webhooks, timeout monitor).

        Applies only while the row is still in ``expected``, every column in
        ``match`` still equals its value, and (if given) ``updatedAt`` is
        still older than ``stale_before``.

        Returns:
            True if this call performed the transition, False otherwise.
        """
        target = transition(expected, event)
        return self._compare_and_set(
            kind, output_id, expected, target, event, error, values, match, stale_before
        )

    def find_processing_by(self, kind: MediaKind, field: str, value: str) -> Optional[Dict[str, Any]]:
        """The in-flight Output holding correlation id ``value`` in ``field``."""
        table = OUTPUT_TABLES[MediaKind(kind)]
        with self.engine.connect() as conn:
            row = conn.execute(
                select(table).where(
                    getattr(table, field) == value, table.status == OutputStatus.PROCESSING
                )
            ).first()
        return dict(row._mapping) if row else None

    def find_stale(self, kind: MediaKind, cutoff: datetime) -> List[Dict[str, Any]]:
        """PROCESSING Outputs whose last write is older than ``cutoff``."""
        table = OUTPUT_TABLES[MediaKind(kind)]
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(table)
                .where(table.status == OutputStatus.PROCESSING, table.updatedAt < cutoff)
                .order_by(table.updatedAt)
            ).fetchall()
        return [dict(row._mapping) for row in rows]

    # --- internals ---

    def _compare_and_set(
        self,
        kind: MediaKind,
        output_id: str,
        current: OutputStatus,
        target: OutputStatus,
        event: Event,
        error: Optional[str],
        values: Dict[str, Any],
        match: Optional[Dict[str, Any]] = None,
        stale_before: Optional[datetime] = None,
    ) -> bool:
        table = OUTPUT_TABLES[MediaKind(kind)]
        stmt = update(table).where(table.id == output_id, table.status == current)
        for column, expected_value in (match or {}).items():
            stmt = stmt.where(getattr(table, column) == expected_value)
        if stale_before is not None:
            stmt = stmt.where(table.updatedAt < stale_before)

        # error is only ever populated on FAILED
        new_values = {
            "updatedAt": utcnow(),
            **values,
            "status": target,
            "error": (error or "Unknown error") if is_failure_event(event) else None,
        }
        return self._execute_update(stmt.values(**new_values)) == 1

    def _execute_update(self, stmt) -> int:
        try:
            with self.engine.begin() as conn:
                return conn.execute(stmt).rowcount
        except IntegrityError as e:
            raise CorrelationConflictError(
                f"Correlation id already held by another in-flight output: {e.orig}"
            ) from e

    def _fetch_one(self, table, row_id: str, label: str) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            row = conn.execute(select(table).where(table.id == row_id)).first()
        if row is None:
            raise NotFoundError(f"{label} {row_id} not found")
        return dict(row._mapping)
