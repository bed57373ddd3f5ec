from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any

from autopilot.assistants.base import Assistant, PollingAssistantClient
from autopilot.completion import CompletionDetector, Verdict
from autopilot.context import RuntimeContext
from autopilot.errors import (
    ConfigurationError,
    EngineStateError,
    ErrorKind,
    ProtocolError,
    ReportedFailureError,
    StateStoreError,
    classify_error,
)
from autopilot.events import EngineEvent
from autopilot.models import Session, SessionStatus, Task, TaskRef, TaskStatus, id_sort_key
from autopilot.prompts import PromptBuilder
from autopilot.resources import ResourceSupervisor
from autopilot.retry import RetryPolicy
from autopilot.state import SessionStateStore
from autopilot.tasks.dependencies import DependencyValidator
from autopilot.tasks.store import TaskStore


class EngineState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class TaskOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    STOPPED = "stopped"


class CancellationToken:
    """One-shot stop signal that every engine wait races against."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, delay_seconds: float) -> bool:
        """Sleep for ``delay_seconds``. Returns False when cancelled first."""
        if self.cancelled:
            return False
        if delay_seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_seconds)
        except TimeoutError:
            return True
        return False

    async def wait_for(self, event: asyncio.Event) -> bool:
        """Wait until ``event`` is set. Returns False when cancelled first."""
        if self.cancelled:
            return False
        if event.is_set():
            return True
        waiter = asyncio.ensure_future(event.wait())
        stopper = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            stopper.cancel()
        return event.is_set() and not self.cancelled


_CONTROL_TRANSITIONS: dict[str, set[EngineState]] = {
    "start": {EngineState.IDLE, EngineState.STOPPED},
    "pause": {EngineState.RUNNING},
    "resume": {EngineState.PAUSED},
    "stop": {EngineState.RUNNING, EngineState.PAUSED},
}


class AutomationEngine:
    """Runs the task plan of one workspace, one task at a time."""

    def __init__(
        self,
        context: RuntimeContext,
        assistant: Assistant,
        *,
        store: TaskStore | None = None,
        supervisor: ResourceSupervisor | None = None,
        state_store: SessionStateStore | None = None,
        detector: CompletionDetector | None = None,
        retry_policy: RetryPolicy | None = None,
        prompts: PromptBuilder | None = None,
        watch_files: bool = False,
    ) -> None:
        config = context.config
        self.context = context
        self.logger = context.logger.getChild("engine")
        self.assistant = assistant
        self.supervisor = supervisor or ResourceSupervisor(context)
        self.store = store or TaskStore(context, supervisor=self.supervisor)
        self.state_store = state_store or SessionStateStore(context.state_root)
        self.detector = detector or CompletionDetector.from_config(
            config.completion, log=self.logger
        )
        self.retry_policy = retry_policy or RetryPolicy.from_config(config.engine)
        self.prompts = prompts or PromptBuilder(
            task_file=config.workspace.task_file,
            max_chars=config.engine.max_prompt_chars,
            include_optional=not config.engine.skip_optional_tasks,
            cache=self.supervisor.cache,
        )
        self.watch_files = watch_files
        self.state = EngineState.IDLE
        self.session: Session | None = None
        self.last_error: BaseException | None = None
        self._token = CancellationToken()
        self._unpaused = asyncio.Event()
        self._runner: asyncio.Task[Session] | None = None
        self._attempt_task: asyncio.Task[Verdict] | None = None
        self._force_stop = False
        self._owns_supervisor_loop = False

    # control surface

    def _require(self, operation: str) -> None:
        allowed = _CONTROL_TRANSITIONS[operation]
        if self.state not in allowed:
            names = ", ".join(sorted(str(state) for state in allowed))
            raise EngineStateError(
                f"Cannot {operation} while {self.state}; allowed from: {names}"
            )

    def _set_state(self, new_state: EngineState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self.logger.info("Engine state %s -> %s", old_state, new_state)
        self._emit(EngineEvent.STATE_CHANGED, old=str(old_state), new=str(new_state))

    def _emit(self, event: EngineEvent, **payload: Any) -> None:
        session_id = self.session.id if self.session else None
        self.context.events.emit(event, session_id=session_id, **payload)

    def start(self, *, resume: bool = False) -> Session:
        """Open a session and begin dispatching. ``resume`` recovers an unfinished checkpoint."""
        self._require("start")
        if self._runner is not None and not self._runner.done():
            raise EngineStateError("The previous session is still shutting down.")
        config = self.context.config
        config.validate()
        if not config.engine.enabled:
            raise ConfigurationError("Automation is disabled (engine.enabled = false).")
        if not self.store.loaded:
            self.store.discover()
        self.validator().validate().raise_for_errors()

        session = Session.open(self.context.workspace_name, config.snapshot())
        if resume:
            self._recover_into(session)
        self.session = session
        self.last_error = None
        self._token = CancellationToken()
        self._unpaused = asyncio.Event()
        self._unpaused.set()
        self._force_stop = False
        self.supervisor.bind_session(session.id)
        if not self.supervisor.running:
            self.supervisor.start()
            self._owns_supervisor_loop = True
        if self.watch_files:
            self.store.watch()
        self._set_state(EngineState.RUNNING)
        session.note("session_started", resumed_from=session.recovered_from)
        self._checkpoint()
        self._emit(
            EngineEvent.SESSION_STARTED,
            resumed_from=session.recovered_from,
            pending=len(self.execution_queue()),
            concurrency=config.engine.effective_concurrency,
        )
        self._runner = asyncio.create_task(self._run_session(), name=f"engine:{session.id}")
        return session

    def pause(self) -> None:
        """Finish the in-flight attempt, then dispatch nothing until ``resume``."""
        self._require("pause")
        self._unpaused.clear()
        self._set_state(EngineState.PAUSED)
        if self.session is not None:
            self.session.status = SessionStatus.PAUSED
            self.session.note("paused")
            self._checkpoint()
        self._emit(EngineEvent.SESSION_PAUSED)

    def resume(self) -> None:
        self._require("resume")
        self._set_state(EngineState.RUNNING)
        if self.session is not None:
            self.session.status = SessionStatus.RUNNING
            self.session.note("resumed")
            self._checkpoint()
        self._unpaused.set()
        self._emit(EngineEvent.SESSION_RESUMED)

    def stop(self, *, force: bool = False) -> None:
        """End the session.

        Backoff and pacing waits end at once either way. A graceful stop still lets
        the in-flight attempt reach its verdict, which can take up to
        ``engine.task_timeout_ms``; ``force`` cancels the attempt immediately and
        returns its task to pending.
        """
        self._require("stop")
        self._force_stop = force
        self._token.cancel()
        if force and self._attempt_task is not None:
            self._attempt_task.cancel()
        self._set_state(EngineState.STOPPED)

    async def wait(self) -> Session | None:
        if self._runner is not None:
            await asyncio.shield(self._runner)
        return self.session

    async def run(self, *, resume: bool = False) -> Session | None:
        self.start(resume=resume)
        return await self.wait()

    async def shutdown(self) -> None:
        if self.state in {EngineState.RUNNING, EngineState.PAUSED}:
            self.stop(force=True)
        await self.wait()
        await self.store.stop_watching()
        await self.supervisor.stop()
        await self.assistant.close()

    # queue

    def sort_key(self, task: Task) -> tuple[Any, ...]:
        return (self.store.spec_rank(task.spec_name), id_sort_key(task.id))

    def validator(self) -> DependencyValidator:
        return DependencyValidator(self.store.tasks(), sort_key=self.sort_key)

    def is_excluded(self, task: Task) -> bool:
        engine = self.context.config.engine
        return (
            task.spec_name in engine.excluded_specs
            or task.id in engine.excluded_tasks
            or task.key in engine.excluded_tasks
        )

    def execution_queue(self) -> list[Task]:
        """Pending tasks whose dependencies are completed, in dispatch order."""
        validator = self.validator()
        candidates = [task for task in self.store.tasks() if not self.is_excluded(task)]
        return [
            task
            for task in validator.compute_order(candidates)
            if task.status in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS}
            and not validator.unsatisfied(task)
        ]

    def _dispatchable(self, key: str) -> Task | None:
        task = self.store.get(key)
        if task is None or task.status.is_terminal or self.is_excluded(task):
            return None
        if self.validator().unsatisfied(task):
            return None
        return task

    # session loop

    async def _gate(self) -> bool:
        if not await self._token.wait_for(self._unpaused):
            return False
        return not self._token.cancelled

    async def _run_session(self) -> Session:
        assert self.session is not None
        status = SessionStatus.COMPLETED
        try:
            while True:
                if not await self._gate():
                    status = SessionStatus.STOPPED
                    break
                queue = self.execution_queue()
                if not queue:
                    break
                outcome = await self._execute_task(queue[0])
                if outcome == TaskOutcome.STOPPED or self._token.cancelled:
                    status = SessionStatus.STOPPED
                    break
                halt_on_failure = not self.context.config.engine.continue_on_failure
                if outcome == TaskOutcome.FAILED and halt_on_failure:
                    status = SessionStatus.HALTED
                    break
                if outcome in {TaskOutcome.COMPLETED, TaskOutcome.FAILED}:
                    delay = self.context.config.engine.task_delay_ms / 1000
                    if not await self._token.sleep(delay):
                        status = SessionStatus.STOPPED
                        break
        except Exception as exc:
            self.last_error = exc
            self.logger.exception("Session %s aborted", self.session.id)
            status = SessionStatus.HALTED
        await self._finish(status)
        return self.session

    async def _finish(self, status: SessionStatus) -> None:
        session = self.session
        assert session is not None
        if status == SessionStatus.COMPLETED:
            blocked = [
                task.key
                for task in self.store.tasks()
                if task.status == TaskStatus.PENDING and not self.is_excluded(task)
            ]
            if blocked:
                self.logger.warning(
                    "%s task(s) left pending behind unmet dependencies: %s",
                    len(blocked),
                    ", ".join(blocked),
                )
        session.close(status)
        session.note("session_closed", status=str(status))
        self._checkpoint()
        try:
            self.state_store.record_history(session)
        except StateStoreError:
            self.logger.exception("Could not record session history")
        self.supervisor.cleanup_session(session.id)
        if self._owns_supervisor_loop:
            await self.supervisor.stop()
            self._owns_supervisor_loop = False
        if self.watch_files:
            await self.store.stop_watching()
        self.logger.info(
            "Session %s %s: %s completed, %s failed, %s skipped",
            session.id,
            status,
            len(session.completed),
            len(session.failed),
            len(session.skipped),
        )
        self._emit(
            EngineEvent.SESSION_COMPLETED,
            status=str(status),
            completed=len(session.completed),
            failed=len(session.failed),
            skipped=len(session.skipped),
            error=str(self.last_error) if self.last_error else None,
        )
        if self.state != EngineState.STOPPED:
            self._set_state(EngineState.IDLE)

    def _task_payload(self, task: Task, **extra: Any) -> dict[str, Any]:
        return {"task_id": task.id, "spec": task.spec_name, "title": task.title, **extra}

    async def _execute_task(self, task: Task) -> TaskOutcome:
        session = self.session
        assert session is not None
        key = task.key
        engine = self.context.config.engine
        if engine.skip_optional_tasks and task.all_subtasks_optional:
            return await self._skip(task, "all subtasks are optional")

        record = session.retry_record(key)
        session.active_spec, session.active_task_id = task.spec_name, task.id
        self.store.update_status(task.id, TaskStatus.IN_PROGRESS, spec_name=task.spec_name)
        await self.store.persist(task.id, spec_name=task.spec_name)
        session.note("task_started", task=key)
        self._checkpoint()
        self.supervisor.track_task_start(key)
        self._emit(
            EngineEvent.TASK_STARTED, **self._task_payload(task, attempt=record.attempts + 1)
        )

        while True:
            if not await self._gate():
                return await self._abandon(task, "stopped before dispatch")
            current = self._dispatchable(key)
            if current is None:
                self.logger.warning("Task %s is no longer dispatchable; recomputing queue", key)
                return await self._abandon(
                    task, "dependencies changed", outcome=TaskOutcome.BLOCKED
                )
            record.attempts += 1
            spec = self.store.spec(current.spec_name)
            last_error = record.last_error
            if last_error is None or record.attempts == 1:
                prompt = self.prompts.build(current, spec)
            else:
                prompt = self.prompts.build_retry(current, spec, last_error, record.attempts - 1)
            try:
                verdict = await self._attempt(current, prompt, record.attempts)
                self._accept(verdict)
            except asyncio.CancelledError:
                if not self._force_stop:
                    raise
                return await self._abandon(task, "forced stop")
            except Exception as exc:
                kind = classify_error(exc)
                entry = record.record(kind, str(exc))
                session.note("attempt_failed", task=key, attempt=entry.attempt, kind=str(kind))
                self._checkpoint()
                decision = self.retry_policy.decide(kind, record.attempts - 1)
                if not decision.retry:
                    return await self._fail(current, kind, exc, decision.reason)
                if self._token.cancelled:
                    return await self._abandon(task, "stopped after failed attempt")
                self.logger.warning(
                    "Task %s attempt %s failed (%s: %s); retrying in %.2fs",
                    key,
                    record.attempts,
                    kind,
                    exc,
                    decision.delay_seconds,
                )
                self._emit(
                    EngineEvent.TASK_RETRYING,
                    **self._task_payload(
                        current,
                        attempt=record.attempts,
                        error_kind=str(kind),
                        error=str(exc),
                        delay_seconds=decision.delay_seconds,
                    ),
                )
                if not await self._token.sleep(decision.delay_seconds):
                    return await self._abandon(task, "stopped during backoff")
                continue
            return await self._complete(current, record.attempts)

    def _accept(self, verdict: Verdict) -> None:
        if verdict.success:
            return
        if verdict.unresolved:
            if self.context.config.engine.verify_completion:
                raise ProtocolError(verdict.reason)
            self.logger.info("No indicator in reply; accepting as success (verify_completion off)")
            return
        raise ReportedFailureError(f"Assistant reported failure: {verdict.reason}")

    async def _attempt(self, task: Task, prompt: str, attempt: int) -> Verdict:
        session = self.session
        assert session is not None
        context = {
            "spec": task.spec_name,
            "task_id": task.id,
            "task_key": task.key,
            "attempt": attempt,
            "session_id": session.id,
        }
        timeout = self.context.config.engine.task_timeout_ms / 1000

        async def _dispatch() -> Verdict:
            if isinstance(self.assistant, PollingAssistantClient):
                message_id = await self.assistant.submit(prompt, context)
                return await self.detector.poll_for_completion(
                    message_id,
                    self.assistant.latest_response,
                    interval=self.context.config.engine.poll_interval_ms / 1000,
                    timeout=timeout,
                )
            stream = self.assistant.execute(prompt, context)
            return await self.detector.await_verdict(stream, timeout)

        attempt_task = asyncio.create_task(_dispatch(), name=f"attempt:{task.key}:{attempt}")
        resource_id = f"attempt:{session.id}:{task.key}:{attempt}"
        self.supervisor.register(
            resource_id,
            "assistant_attempt",
            session_id=session.id,
            release=attempt_task.cancel,
        )
        self._attempt_task = attempt_task
        try:
            return await attempt_task
        finally:
            self._attempt_task = None
            self.supervisor.unregister(resource_id)

    async def _complete(self, task: Task, attempts: int) -> TaskOutcome:
        session = self.session
        assert session is not None
        skip_optional = self.context.config.engine.skip_optional_tasks
        for subtask in task.subtasks:
            status = (
                TaskStatus.SKIPPED if subtask.optional and skip_optional else TaskStatus.COMPLETED
            )
            self.store.update_subtask_status(task.id, subtask.id, status, spec_name=task.spec_name)
        self.store.update_status(task.id, TaskStatus.COMPLETED, spec_name=task.spec_name)
        await self.store.persist(task.id, spec_name=task.spec_name)
        self.supervisor.track_task_end(task.key)
        session.completed.append(TaskRef.of(task))
        session.active_spec = session.active_task_id = None
        session.note("task_completed", task=task.key, attempts=attempts)
        self._checkpoint()
        self.logger.info("Task %s completed after %s attempt(s)", task.key, attempts)
        self._emit(EngineEvent.TASK_COMPLETED, **self._task_payload(task, attempt=attempts))
        return TaskOutcome.COMPLETED

    async def _fail(
        self, task: Task, kind: ErrorKind, exc: BaseException, reason: str
    ) -> TaskOutcome:
        session = self.session
        assert session is not None
        record = session.retry_record(task.key)
        self.last_error = exc
        self.store.update_status(task.id, TaskStatus.FAILED, spec_name=task.spec_name)
        await self.store.persist(task.id, spec_name=task.spec_name)
        self.supervisor.track_task_end(task.key)
        session.failed.append(TaskRef.of(task))
        session.active_spec = session.active_task_id = None
        session.note("task_failed", task=task.key, kind=str(kind), reason=reason)
        self._checkpoint()
        self.logger.error(
            "Task %s failed after %s attempt(s) (%s): %s", task.key, record.attempts, kind, exc
        )
        self._emit(
            EngineEvent.TASK_FAILED,
            **self._task_payload(
                task,
                attempt=record.attempts,
                error_kind=str(kind),
                error=str(exc),
                retries=record.retries,
                reason=reason,
            ),
        )
        return TaskOutcome.FAILED

    async def _skip(self, task: Task, reason: str) -> TaskOutcome:
        session = self.session
        assert session is not None
        self.store.update_status(task.id, TaskStatus.SKIPPED, spec_name=task.spec_name)
        for subtask in task.subtasks:
            self.store.update_subtask_status(
                task.id, subtask.id, TaskStatus.SKIPPED, spec_name=task.spec_name
            )
        await self.store.persist(task.id, spec_name=task.spec_name)
        session.skipped.append(TaskRef.of(task))
        session.note("task_skipped", task=task.key, reason=reason)
        self._checkpoint()
        self.logger.info("Task %s skipped: %s", task.key, reason)
        self._emit(EngineEvent.TASK_SKIPPED, **self._task_payload(task, reason=reason))
        return TaskOutcome.SKIPPED

    async def _abandon(
        self, task: Task, reason: str, *, outcome: TaskOutcome = TaskOutcome.STOPPED
    ) -> TaskOutcome:
        session = self.session
        assert session is not None
        current = self.store.get(task.key)
        if current is not None and current.status == TaskStatus.IN_PROGRESS:
            self.store.reset(current.id, spec_name=current.spec_name, subtasks=False)
            await self.store.persist(current.id, spec_name=current.spec_name)
        self.supervisor.track_task_end(task.key)
        session.active_spec = session.active_task_id = None
        session.note("task_abandoned", task=task.key, reason=reason)
        self._checkpoint()
        self.logger.info("Task %s returned to pending: %s", task.key, reason)
        return outcome

    # persistence

    def _checkpoint(self) -> None:
        if self.session is None:
            return
        try:
            self.state_store.save_session(self.session)
        except StateStoreError:
            self.logger.exception("Checkpoint of session %s failed", self.session.id)

    def _recover_into(self, session: Session) -> None:
        recovered = self.state_store.unfinished_session()
        if recovered is None:
            self.logger.info("No unfinished session to resume; starting fresh")
            return
        session.recovered_from = recovered.id
        session.completed = list(recovered.completed)
        session.failed = list(recovered.failed)
        session.skipped = list(recovered.skipped)
        session.retry_records = dict(recovered.retry_records)
        session.history = list(recovered.history)
        # the task file cannot encode failed or skipped, so restore them from the checkpoint
        restored = ((recovered.failed, TaskStatus.FAILED), (recovered.skipped, TaskStatus.SKIPPED))
        for refs, status in restored:
            for ref in refs:
                task = self.store.get(ref.id, ref.spec)
                if task is not None and task.status == TaskStatus.PENDING:
                    self.store.update_status(ref.id, status, spec_name=ref.spec)
        self.logger.info(
            "Resuming from %s: %s completed, %s failed",
            recovered.id,
            len(session.completed),
            len(session.failed),
        )

    async def reset_task(self, task_id: str, *, spec_name: str | None = None) -> bool:
        """Operator reset: back to pending on disk and in memory, retry history cleared."""
        if not self.store.loaded:
            self.store.discover()
        task = self.store.get(task_id, spec_name)
        if task is None:
            return False
        if (
            self.session is not None
            and self.state in {EngineState.RUNNING, EngineState.PAUSED}
            and self.session.active_task_id == task.id
            and self.session.active_spec == task.spec_name
        ):
            raise EngineStateError(f"Task {task.key} is in flight and cannot be reset.")
        self.store.reset(task.id, spec_name=task.spec_name)
        await self.store.persist(task.id, spec_name=task.spec_name)
        ref = TaskRef.of(task)

        def _forget(payload: Any) -> Any:
            if not isinstance(payload, dict) or "session_id" not in payload:
                return payload
            for name in ("completed", "failed", "skipped"):
                payload[name] = [item for item in payload.get(name, []) if item != ref.to_dict()]
            payload.get("retry_records", {}).pop(task.key, None)
            return payload

        if self.session is not None and not self.session.status.is_closed:
            for refs in (self.session.completed, self.session.failed, self.session.skipped):
                if ref in refs:
                    refs.remove(ref)
            self.session.retry_records.pop(task.key, None)
            self.session.note("task_reset", task=task.key)
            self._checkpoint()
        else:
            self.state_store.update_json("session", _forget)
        return True

    def status(self) -> dict[str, Any]:
        tasks = self.store.tasks()
        counts: dict[str, int] = {str(status): 0 for status in TaskStatus}
        for task in tasks:
            counts[str(task.status)] += 1
        return {
            "workspace": self.context.workspace_name,
            "workspace_id": self.context.workspace_id,
            "state": str(self.state),
            "concurrency": self.context.config.engine.effective_concurrency,
            "session": self.session.to_dict() if self.session else None,
            "counts": counts,
            "queue": [task.key for task in self.execution_queue()],
        }
