"""Lifecycle orchestration - classify inbox mail, then purge aged advertising."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .classifier import ClassificationGateway
from .config import Settings
from .constants import (
    ADVERTISING_LABEL,
    BATCH_SIZE,
    CONFIDENCE_THRESHOLD,
    DELETE_FROM_ADVERTISING_DAYS,
    INBOX,
    MAX_EMAIL_AGE_DAYS,
    PROCESSED_LABEL,
)
from .errors import (
    DeletionError,
    LabelError,
    LocationError,
    MailboxConnectionError,
    MailboxError,
    NotConnectedError,
)
from .mailbox import Mailbox
from .models import ClassificationReport, CleanupReport, FetchCriteria, Message, RunReport

logger = logging.getLogger(__name__)


@dataclass
class LifecycleOptions:
    """Knobs for one run, resolved once from the settings."""

    batch_size: int = BATCH_SIZE
    max_age_days: int = MAX_EMAIL_AGE_DAYS
    delete_after_days: int = DELETE_FROM_ADVERTISING_DAYS
    dry_run: bool = False
    confidence_threshold: float = CONFIDENCE_THRESHOLD

    @classmethod
    def from_settings(cls, settings: Settings) -> LifecycleOptions:
        return cls(
            batch_size=settings.batch_size,
            max_age_days=settings.max_email_age_days,
            delete_after_days=settings.delete_from_advertising_days,
            dry_run=settings.dry_run,
            confidence_threshold=settings.classification_confidence_threshold,
        )


class LifecycleOrchestrator:
    """Drives messages through classify -> label -> age -> delete.

    Owns the mailbox session for the duration of a run; every mailbox call
    is issued sequentially.
    """

    def __init__(
        self,
        mailbox: Mailbox,
        gateway: ClassificationGateway | None,
        options: LifecycleOptions,
    ):
        self.mailbox = mailbox
        self.gateway = gateway
        self.options = options

    # === Main Entry Point ===

    async def run(self, classify: bool = True, cleanup: bool = True) -> RunReport:
        """Connect, run the requested passes and always disconnect.

        A MailboxConnectionError aborts the remaining passes and is re-raised
        once the session has been closed.
        """
        report = RunReport()
        try:
            self.mailbox.connect()
            self.prepare()
            if classify:
                report.classification = await self.classify_inbox()
            if cleanup:
                report.cleanup = await self.cleanup_advertising()
        finally:
            self.mailbox.disconnect()
        return report

    def prepare(self) -> None:
        """Make sure the lifecycle labels exist before first use."""
        for label in (ADVERTISING_LABEL, PROCESSED_LABEL):
            try:
                self.mailbox.ensure_location_exists(label)
            except LocationError as exc:
                logger.error(f"Could not create {label!r}: {exc}")

    # === Pass 1: classification ===

    async def classify_inbox(self) -> ClassificationReport:
        """Classify unprocessed Inbox mail and label the outcome."""
        if self.gateway is None:
            raise RuntimeError("The classification pass needs a classification gateway")
        report = ClassificationReport()
        criteria = FetchCriteria(
            max_age_days=self.options.max_age_days,
            batch_size=self.options.batch_size,
            include_read=True,
            include_unread=True,
            exclude_processed=True,
        )
        messages = self._fetch(criteria, INBOX)
        report.fetched = len(messages)

        pending: list[Message] = []
        for message in messages:
            # Query-time exclusion can lag behind a label that was just applied.
            if message.has_label(PROCESSED_LABEL):
                logger.info(f"Skipping already processed message: {message.subject!r}")
                report.skipped += 1
            else:
                pending.append(message)

        results = await self.gateway.classify_batch(pending)

        for message in pending:
            result = results[message.id]
            logger.info(
                f"{message.subject!r}: {'advertising' if result.is_advertising else 'not advertising'} "
                f"({result.confidence * 100:.0f}% confidence) - {result.reason}"
            )
            if result.is_advertising and result.confidence < self.options.confidence_threshold:
                logger.info(
                    f"Confidence below threshold {self.options.confidence_threshold:.2f}; "
                    "labeling as advertising anyway"
                )

            # Always mark handled, whatever the outcome. Done before filing:
            # a folder move takes the message out of the Inbox, and keyword
            # flags travel with it.
            if self._apply(self.mailbox.add_label, message, PROCESSED_LABEL):
                report.marked_processed += 1
            else:
                report.failed += 1

            if result.is_advertising:
                if self._apply(self.mailbox.move_to, message, ADVERTISING_LABEL):
                    report.marked_advertising += 1
                else:
                    report.failed += 1

            report.processed += 1

        logger.info(
            f"Classification pass: {report.processed} processed, {report.skipped} skipped, "
            f"{report.marked_advertising} advertising, {report.marked_processed} marked processed"
        )
        return report

    def _apply(self, operation, message: Message, label: str) -> bool:
        try:
            operation(message.id, label, INBOX)
        except (LabelError, LocationError) as exc:
            logger.error(f"Failed to apply {label!r} to {message.subject!r}: {exc}")
            return False
        return True

    # === Pass 2: cleanup ===

    async def cleanup_advertising(self) -> CleanupReport:
        """Delete advertising mail at or past the age threshold."""
        threshold = self.options.delete_after_days
        report = CleanupReport(dry_run=self.options.dry_run)
        # No age ceiling: the oldest advertising is exactly what must be found.
        criteria = FetchCriteria(
            max_age_days=None,
            batch_size=self.options.batch_size,
            include_read=True,
            include_unread=True,
            exclude_processed=False,
        )
        messages = self._fetch(criteria, ADVERTISING_LABEL)
        report.found = len(messages)
        verb = "Would delete" if self.options.dry_run else "Deleting"

        for message in messages:
            age = message.age_in_days
            if age < threshold:
                logger.info(f"Keeping {message.subject!r}: {age} days old (threshold {threshold})")
                report.skipped_for_age += 1
                continue

            logger.info(f"{verb} {message.subject!r}: {age} days old (threshold {threshold})")
            if self.options.dry_run:
                report.deleted += 1
                continue
            try:
                self.mailbox.delete_permanently(message.id, ADVERTISING_LABEL)
            except DeletionError as exc:
                logger.error(f"Failed to delete {message.subject!r}: {exc}")
                report.failed += 1
                continue
            report.deleted += 1

        logger.info(
            f"Cleanup pass: {report.found} found, {report.deleted} "
            f"{'would be deleted' if self.options.dry_run else 'deleted'}, "
            f"{report.skipped_for_age} too recent"
        )
        return report

    def _fetch(self, criteria: FetchCriteria, location: str) -> list[Message]:
        """Fetch for a pass; only a lost connection stops the run."""
        try:
            return self.mailbox.fetch(criteria, location)
        except (MailboxConnectionError, NotConnectedError):
            raise
        except MailboxError as exc:
            logger.error(f"Could not fetch messages from {location}: {exc}")
            return []
