"""
Queue driver: the loop that turns Pending work items into JSON files.

Items are taken from one snapshot of the queue and handled strictly one at a time:
analyze, write, record. A status is only recorded after the work it describes has
happened, so anything interrupted before the record stays Pending and is redone later.

Failure policy:
- EmptyResult, FatalServiceFailure, empty serialization and write errors mark the item
  Failed and the loop moves on without bothering the operator.
- TransientServiceFailure (quota, authorization) asks a DecisionProvider: SKIP marks the
  item Failed and continues, HALT stops the run and leaves this and every later item Pending.
- Store errors are not caught here; they end the run.
"""

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from loguru import logger
from rich.console import Console
from rich.prompt import Prompt

from photo_json.analysis import (
    EmptyResult,
    FatalServiceFailure,
    ImageAnalysis,
    Outcome,
    Success,
    TransientServiceFailure,
)
from photo_json.output import OutputWriter, output_name
from photo_json.store import QueueStore, WorkItem


class Decision(StrEnum):
    SKIP = "skip"
    HALT = "halt"


class Analyzer(Protocol):
    def analyze(self, image_path: Path) -> Outcome: ...


class DecisionProvider(Protocol):
    def decide(self, item: WorkItem, failure: TransientServiceFailure) -> Decision: ...


class QueueObserver(Protocol):
    def item_started(self, index: str, item: WorkItem) -> None: ...

    def item_succeeded(self, index: str, item: WorkItem, output: Path) -> None: ...

    def item_failed(self, index: str, item: WorkItem, reason: str) -> None: ...

    def transient_failure(
        self,
        index: str,
        item: WorkItem,
        failure: TransientServiceFailure,
        decision: Decision,
    ) -> None: ...

    def halted(self, index: str, item: WorkItem, remaining: int) -> None: ...

    def finished(self, report: "RunReport") -> None: ...


@dataclass(frozen=True)
class RunReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    halted: bool = False


class FixedDecisionProvider:
    """Answer every transient failure the same way (for unattended runs)."""

    def __init__(self, decision: Decision) -> None:
        self.decision = decision

    def decide(self, item: WorkItem, failure: TransientServiceFailure) -> Decision:  # noqa: ARG002
        return self.decision


class ConsoleDecisionProvider:
    """Ask the operator on the console whether to skip the current image or halt the run."""

    CHOICES = {"s": Decision.SKIP, "h": Decision.HALT}

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def decide(self, item: WorkItem, failure: TransientServiceFailure) -> Decision:
        self.console.print(
            f"[bold yellow]The analysis service refused {item.path.name} "
            f"(HTTP {failure.status_code}).[/bold yellow]",
        )
        self.console.print("The account has possibly exhausted its funding or quota.")
        # Prompt.ask repeats the question until one of the choices is entered.
        answer = Prompt.ask(
            "[S]kip this image or [H]alt the run",
            choices=list(self.CHOICES),
            console=self.console,
            case_sensitive=False,
        )
        return self.CHOICES[answer.lower()]


class LoggingObserver:
    """Default observer: every decision point goes to the log with item id and path."""

    def item_started(self, index: str, item: WorkItem) -> None:
        logger.info("item_started", index=index, id=item.id, path=item.source_path)

    def item_succeeded(self, index: str, item: WorkItem, output: Path) -> None:
        logger.info("item_succeeded", index=index, id=item.id, output=str(output))

    def item_failed(self, index: str, item: WorkItem, reason: str) -> None:
        logger.warning("item_failed", index=index, id=item.id, path=item.source_path, reason=reason)

    def transient_failure(
        self,
        index: str,
        item: WorkItem,
        failure: TransientServiceFailure,
        decision: Decision,
    ) -> None:
        logger.warning(
            "transient_failure_decision",
            index=index,
            id=item.id,
            path=item.source_path,
            status=failure.status_code,
            decision=str(decision),
        )

    def halted(self, index: str, item: WorkItem, remaining: int) -> None:
        logger.warning("run_halted_by_operator", index=index, id=item.id, left_pending=remaining)

    def finished(self, report: RunReport) -> None:
        logger.info(
            "processing_summary",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
            halted=report.halted,
        )


class QueueDriver:
    def __init__(
        self,
        store: QueueStore,
        analyzer: Analyzer,
        writer: OutputWriter,
        decisions: DecisionProvider,
        observer: QueueObserver | None = None,
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.writer = writer
        self.decisions = decisions
        self.observer = observer or LoggingObserver()

    def run(self) -> RunReport:
        """Drain one snapshot of the Pending items and report the counts."""
        items = self.store.fetch_pending()
        total = len(items)
        succeeded = failed = 0
        halted = False

        logger.info("queue_processing_started", pending=total)
        for idx, item in enumerate(items, start=1):
            index = f"{idx}/{total}"
            with logger.contextualize(file=item.path.name):
                self.observer.item_started(index, item)
                outcome = self.analyzer.analyze(item.path)

                if isinstance(outcome, TransientServiceFailure):
                    decision = self.decisions.decide(item, outcome)
                    self.observer.transient_failure(index, item, outcome, decision)
                    if decision is Decision.HALT:
                        self.observer.halted(index, item, total - idx + 1)
                        halted = True
                        break
                    ok = self._fail(index, item, f"skipped by operator: {outcome.reason}")
                elif isinstance(outcome, Success):
                    ok = self._complete(index, item, outcome.result)
                elif isinstance(outcome, (EmptyResult, FatalServiceFailure)):
                    ok = self._fail(index, item, outcome.reason)
                else:
                    raise TypeError(f"Unknown analysis outcome: {outcome!r}")

            if ok:
                succeeded += 1
            else:
                failed += 1

        report = RunReport(
            processed=succeeded + failed,
            succeeded=succeeded,
            failed=failed,
            halted=halted,
        )
        self.observer.finished(report)
        return report

    def _complete(self, index: str, item: WorkItem, result: ImageAnalysis) -> bool:
        try:
            content = self.writer.render(item.source_path, result)
        except (ValueError, TypeError) as exc:
            return self._fail(index, item, f"serialization failed: {exc}")
        if not content.strip():
            return self._fail(index, item, "empty serialization")

        # Never overwrite the output of a different, already Succeeded item.
        owner = self.store.find_succeeded_with_stem(item.path.stem, exclude_id=item.id)
        if owner is not None:
            return self._fail(index, item, f"output name collides with item {owner}")

        try:
            target = self.writer.write(output_name(item.source_path), content)
        except OSError as exc:
            return self._fail(index, item, f"write failed: {exc}")

        self.store.mark_succeeded(item.id)
        self.observer.item_succeeded(index, item, target)
        return True

    def _fail(self, index: str, item: WorkItem, reason: str) -> bool:
        self.store.mark_failed(item.id, reason)
        self.observer.item_failed(index, item, reason)
        return False
