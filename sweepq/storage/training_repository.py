"""Classifier training corpus (email_training). Write-only from the engine's side."""

from __future__ import annotations

from sweepq.observability.logging import get_logger
from sweepq.storage import BaseRepository
from sweepq.storage.models import EmailTraining

logger = get_logger(__name__)


class TrainingRepository(BaseRepository):
    def __init__(self) -> None:
        super().__init__("email_training")

    def upsert(self, record: EmailTraining) -> None:
        """
        Store the classifier's answer for a message, replacing any earlier answer

        Side Effects:
            - Inserts or updates the email_training row keyed by email_id
        """
        self.execute(
            """
            INSERT INTO email_training
                (user_email, email_id, from_address, subject, body,
                 ai_answer, confidence, heuristics_used)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(email_id) DO UPDATE SET
                ai_answer = excluded.ai_answer,
                confidence = excluded.confidence,
                heuristics_used = excluded.heuristics_used
            """,
            (
                record.user_email,
                record.email_id,
                record.from_address,
                record.subject,
                record.body,
                record.ai_answer,
                record.confidence,
                1 if record.heuristics_used else 0,
            ),
        )
        logger.debug("Training record stored for %s", record.email_id)

    def get(self, email_id: str) -> EmailTraining | None:
        row = self.query_one("SELECT * FROM email_training WHERE email_id = ?", (email_id,))
        if not row:
            return None
        return EmailTraining(
            user_email=row["user_email"],
            email_id=row["email_id"],
            from_address=row["from_address"],
            subject=row["subject"],
            body=row["body"],
            ai_answer=row["ai_answer"],
            confidence=row["confidence"],
            heuristics_used=bool(row["heuristics_used"]),
        )
