"""Per-message ingestion: parse, classify, persist, notify."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from ..core.interfaces import Classifier, Notifier, ParseError, PersistenceGateway
from ..core.models import Account, Category, IngestionReport, Message, RawFetchResult

LOGGER = logging.getLogger(__name__)

IngestedCallback = Callable[[Message], None]


class MessageParserProtocol(Protocol):
    """Minimal protocol implemented by message parsers."""

    def parse(self, payload: bytes, *, account_id: str, folder: str) -> Message:
        """Convert raw RFC822 payload into a message."""
        raise NotImplementedError


class IngestionPipeline:
    """Drive fetched payloads through classification, storage and alerts.

    Every stage is isolated per message: a parse failure drops only that
    message, a classifier failure degrades to ``Uncategorized``, a notifier
    failure is logged and forgotten, and a storage failure is retried and
    then reported without interrupting the batch. An interested message that
    is already stored with the same category is not announced again.
    """

    def __init__(
        self,
        parser: MessageParserProtocol,
        classifier: Classifier,
        repository: PersistenceGateway,
        notifier: Notifier | None = None,
        *,
        body_limit: int = 1000,
        classify_timeout: float = 30.0,
        persist_retries: int = 2,
        persist_retry_delay: float = 0.5,
        max_concurrency: int = 4,
    ) -> None:
        # pylint: disable=too-many-arguments
        """Initialise the pipeline with its capabilities and bounds."""
        if body_limit < 0:
            raise ValueError("body_limit must not be negative")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self._parser = parser
        self._classifier = classifier
        self._repository = repository
        self._notifier = notifier
        self._body_limit = body_limit
        self._classify_timeout = classify_timeout
        self._persist_retries = persist_retries
        self._persist_retry_delay = persist_retry_delay
        self._max_concurrency = max_concurrency

    async def process_batch(
        self,
        account: Account,
        raws: Sequence[RawFetchResult],
        folder: str,
        *,
        on_ingested: IngestedCallback | None = None,
    ) -> IngestionReport:
        """Process ``raws`` independently and return aggregated counters."""
        report = IngestionReport()
        if not raws:
            return report
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(raw: RawFetchResult) -> IngestionReport:
            async with semaphore:
                return await self.process(
                    account, raw, folder, on_ingested=on_ingested
                )

        for outcome in await asyncio.gather(*(bounded(raw) for raw in raws)):
            report.merge(outcome)
        LOGGER.info(
            "Batch for account %s: fetched=%s persisted=%s notified=%s failed=%s",
            account.id,
            report.fetched,
            report.persisted,
            report.notified,
            report.failed,
        )
        return report

    async def process(
        self,
        account: Account,
        raw: RawFetchResult,
        folder: str,
        *,
        on_ingested: IngestedCallback | None = None,
    ) -> IngestionReport:
        """Run one payload through every stage.

        ``on_ingested`` is called with the message once it has been
        classified, stored and announced.
        """
        report = IngestionReport(fetched=1)
        try:
            message = self._parser.parse(raw.raw, account_id=account.id, folder=folder)
        except ParseError as exc:
            LOGGER.warning(
                "Dropping unparsable message UID %s for account %s: %s",
                raw.uid,
                account.id,
                exc,
            )
            report.failed += 1
            return report
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception(
                "Parser crashed on UID %s for account %s; dropping message",
                raw.uid,
                account.id,
            )
            report.failed += 1
            return report
        report.parsed += 1

        message.categorize(await self.classify(message))

        stored, changed = await self._persist(message)
        if stored:
            report.persisted += 1
        else:
            report.failed += 1

        if message.category is Category.INTERESTED:
            if stored and not changed:
                LOGGER.debug(
                    "Skipping notification for %s; already stored as %s",
                    message.dedupe_key,
                    message.category.value,
                )
            elif await self._notify(message, account):
                report.notified += 1

        LOGGER.debug(
            "Processed UID %s for account %s: %s (%s)",
            raw.uid,
            account.id,
            message.subject,
            message.category.value,
        )
        if on_ingested is not None:
            on_ingested(message)
        return report

    async def classify(self, message: Message) -> Category:
        """Return the category for ``message``, never raising."""
        excerpt = message.body[: self._body_limit]
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self._classifier.classify, message.sender, message.subject, excerpt
                ),
                timeout=self._classify_timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Classifier timed out for %s; using %s",
                message.message_id,
                Category.UNCATEGORIZED.value,
            )
            return Category.UNCATEGORIZED
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Classifier failed for %s: %s; using %s",
                message.message_id,
                exc,
                Category.UNCATEGORIZED.value,
            )
            return Category.UNCATEGORIZED
        category = Category.parse(result)
        if category is Category.UNCATEGORIZED and result != Category.UNCATEGORIZED:
            LOGGER.info(
                "Classifier returned unknown label %r for %s", result, message.message_id
            )
        return category

    async def _persist(self, message: Message) -> tuple[bool, bool]:
        """Return whether ``message`` was stored and whether its category is new."""
        attempts = self._persist_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                changed = await asyncio.to_thread(self._repository.upsert, message)
                return True, bool(changed)
            except Exception as exc:  # pylint: disable=broad-except
                if attempt < attempts:
                    LOGGER.warning(
                        "Upsert attempt %s/%s failed for %s: %s",
                        attempt,
                        attempts,
                        message.dedupe_key,
                        exc,
                    )
                    await asyncio.sleep(self._persist_retry_delay * attempt)
                    continue
                LOGGER.error(
                    "Failed to persist message %s after %s attempts",
                    message.dedupe_key,
                    attempts,
                    exc_info=True,
                )
        return False, True

    async def _notify(self, message: Message, account: Account) -> bool:
        if self._notifier is None:
            return False
        try:
            await asyncio.to_thread(self._notifier.notify, message, account)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Notification failed for %s on account %s: %s",
                message.message_id,
                account.id,
                exc,
            )
            return False
        return True


__all__ = ["IngestedCallback", "IngestionPipeline", "MessageParserProtocol"]
