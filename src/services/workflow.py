"""Resumable step executor.

A workflow is an ordered list of named steps. Each completed step is recorded
as a ``JobStep`` row in the same transaction as the step's own writes, so a
re-run of the same job resumes at the first step without a record and never
repeats a side effect that already committed.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from src.models.receipt_job import JobStep, ReceiptJob

logger = logging.getLogger(__name__)

StepResult = dict[str, Any] | None


@dataclass
class StepContext:
    """What a step sees: its job and the results of earlier steps."""

    job: ReceiptJob
    results: dict[str, StepResult] = field(default_factory=dict)


@dataclass
class Step:
    """A named unit of work.

    ``run`` must leave its database writes uncommitted; the executor commits
    them together with the step record. The returned dict must be
    JSON-serializable.
    """

    name: str
    run: Callable[[StepContext], StepResult]


class WorkflowExecutor:
    """Runs a job's steps in order, skipping steps it already completed."""

    def __init__(
        self,
        db: Session,
        steps: list[Step],
        commit: Callable[[], None] | None = None,
        rollback: Callable[[], None] | None = None,
    ) -> None:
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names: {names}")
        self.db = db
        self.steps = steps
        self._commit = commit or db.commit
        self._rollback = rollback or db.rollback

    def completed_steps(self, job: ReceiptJob) -> dict[str, StepResult]:
        """Get results of the steps this job has already committed."""
        rows = (
            self.db.query(JobStep)
            .filter(JobStep.job_id == job.id)
            .order_by(JobStep.position)
            .all()
        )
        return {row.name: row.result for row in rows}

    def run(self, job: ReceiptJob) -> dict[str, StepResult]:
        """Run every incomplete step of ``job``.

        Exceptions from a step roll back that step's writes and propagate;
        earlier steps stay committed.

        Returns:
            Results of all steps, keyed by step name.
        """
        context = StepContext(job=job, results=self.completed_steps(job))

        for position, step in enumerate(self.steps):
            if step.name in context.results:
                logger.debug(f"Job {job.id}: skipping completed step {step.name}")
                continue

            logger.debug(f"Job {job.id}: running step {step.name}")
            try:
                result = step.run(context)
                self.db.add(
                    JobStep(
                        job_id=job.id,
                        name=step.name,
                        position=position,
                        result=result,
                        completed_at=datetime.now(UTC),
                    )
                )
                self._commit()
            except Exception:
                self._rollback()
                raise
            context.results[step.name] = result

        return context.results
