"""Manages the job queue, concurrency slots, and the yt-dlp/ffmpeg processes behind them."""
import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from .constants import DEFAULT_MAX_CONCURRENT_JOBS, DEFAULT_TERMINATION_GRACE, TEMP_FILE_SUFFIXES, TOOL_NAMES
from .exceptions import (
    InvalidJobSpec, JobFailed, JobNotFound, PlaylistManagerError, ToolUnavailable, UnsupportedOperation
)
from .jobs import Job, JobKind, JobSpec, JobStatus
from .progress import ProgressParser, ProgressState, ProgressUpdate
from .tools import ProcessHandle, ToolAdapter

EVENT_PROGRESS = 'progress'
EVENT_COMPLETE = 'complete'
EVENT_ERROR = 'error'
EVENT_QUEUE_CHANGED = 'queue_changed'
EVENT_TOOL_UNAVAILABLE = 'tool_unavailable'


@dataclass(frozen=True)
class QueueEvent:
    """An event delivered to queue listeners. `job` is always a snapshot."""
    type: str
    job: Optional[Job] = None
    progress: Optional[ProgressUpdate] = None
    error: Optional[PlaylistManagerError] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'event': self.type}
        if self.job is not None:
            data['job'] = self.job.to_dict()
        if self.progress is not None:
            data['progress'] = {
                'phase': self.progress.phase,
                'percent': self.progress.percent,
                'eta_seconds': self.progress.eta_seconds,
                'speed': self.progress.speed,
                'phase_started': self.progress.phase_started,
            }
        if self.error is not None:
            data['error'] = {'type': type(self.error).__name__, 'message': str(self.error)}
            if isinstance(self.error, ToolUnavailable):
                data['error']['kind'] = self.error.kind
            if isinstance(self.error, JobFailed):
                data['error']['exit_code'] = self.error.exit_code
        return data


@dataclass(frozen=True)
class QueueStatus:
    """Point-in-time counts of the queue."""
    total: int
    queued: int
    active: int
    paused: int
    completed: int
    failed: int
    cancelled: int
    max_concurrent: int
    unavailable_tools: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total, 'queued': self.queued, 'active': self.active,
            'paused': self.paused, 'completed': self.completed, 'failed': self.failed,
            'cancelled': self.cancelled, 'max_concurrent': self.max_concurrent,
            'unavailable_tools': list(self.unavailable_tools),
        }


Listener = Callable[[QueueEvent], Union[None, Awaitable[None]]]


class JobQueueManager:
    """
    Owns every job and drives it from `queued` to a terminal status.

    At most `max_concurrent` jobs are active at once; queued jobs are promoted in
    FIFO order whenever a slot frees up. All mutation happens on the event loop
    inside this class; listeners only ever see snapshots.
    """
    def __init__(self, adapter: ToolAdapter, max_concurrent: int = DEFAULT_MAX_CONCURRENT_JOBS,
                 termination_grace: float = DEFAULT_TERMINATION_GRACE, parser: Optional[ProgressParser] = None):
        """
        Initializes the JobQueueManager.

        Args:
            adapter: Builds argument vectors and spawns/terminates processes.
            max_concurrent: Maximum number of simultaneously active jobs.
            termination_grace: Seconds to wait after an interrupt before killing a process.
            parser: Progress parser; a default one is created when omitted.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.adapter = adapter
        self.parser = parser or ProgressParser()
        self.max_concurrent = max_concurrent
        self.termination_grace = termination_grace
        self.logger = logging.getLogger(__name__)

        self.jobs: Dict[str, Job] = {}
        self._queue_order: List[str] = []
        self._starting: Set[str] = set()
        self._handles: Dict[str, ProcessHandle] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        # cancelled jobs whose process has not been reaped yet -> output they may still write
        self._dying: Dict[str, Tuple[str, ...]] = {}
        self._unavailable: Dict[JobKind, str] = {}
        self._listeners: List[Listener] = []
        self._background: Set[asyncio.Task] = set()
        self._promotion_lock = asyncio.Lock()
        self._closing = False

    # --- Listeners ---

    def add_listener(self, listener: Listener):
        """Registers a callable (sync or async) that receives every QueueEvent."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: QueueEvent):
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"Queue listener {listener!r} failed while handling '{event.type}'")

    # --- Public operations ---

    async def enqueue(self, spec: Union[JobSpec, Dict[str, Any]]) -> str:
        """
        Validates a job request and appends it to the queue.

        Returns:
            The id of the new job.

        Raises:
            InvalidJobSpec: If the request is malformed. No job is created.
        """
        job_spec = self._validate_spec(spec)
        default_title = Path(job_spec.source).name if job_spec.kind is JobKind.CONVERSION else job_spec.source
        job = Job(job_id=str(uuid.uuid4()), spec=job_spec, title=job_spec.title or default_title)
        self.jobs[job.job_id] = job
        self._queue_order.append(job.job_id)
        self.logger.info(f"Queued {job.kind.value} job {job.job_id} for {job_spec.source}")

        await self._emit(QueueEvent(EVENT_QUEUE_CHANGED, job=job.snapshot()))
        await self._promote()
        return job.job_id

    async def pause(self, job_id: str):
        """
        Pauses a queued job.

        Only jobs that are not backed by a process can be paused.

        Raises:
            JobNotFound: If the id is unknown.
            UnsupportedOperation: If the job is active, starting, or already finished.
        """
        job = self._get(job_id)
        if job.status is JobStatus.ACTIVE or job_id in self._starting:
            raise UnsupportedOperation("Active jobs cannot be paused; cancel the job instead.")
        if not job.can_transition(JobStatus.PAUSED):
            raise UnsupportedOperation(f"Cannot pause a job that is {job.status.value}.")

        job.status = JobStatus.PAUSED
        self._queue_order.remove(job_id)
        self.logger.info(f"Paused job {job_id}")
        await self._emit(QueueEvent(EVENT_QUEUE_CHANGED, job=job.snapshot()))

    async def resume(self, job_id: str):
        """
        Returns a paused job to the tail of the queue.

        Raises:
            JobNotFound: If the id is unknown.
            UnsupportedOperation: If the job is not paused.
        """
        job = self._get(job_id)
        if not job.can_transition(JobStatus.QUEUED):
            raise UnsupportedOperation(f"Cannot resume a job that is {job.status.value}.")

        job.status = JobStatus.QUEUED
        self._queue_order.append(job_id)
        self.logger.info(f"Resumed job {job_id}")
        await self._emit(QueueEvent(EVENT_QUEUE_CHANGED, job=job.snapshot()))
        await self._promote()

    async def cancel(self, job_id: str):
        """
        Cancels a queued, paused, or active job.

        The status becomes `cancelled` right away. For an active job the process
        is interrupted in the background and killed after the grace period; its
        output stays reserved until the process has been reaped.

        Raises:
            JobNotFound: If the id is unknown.
            UnsupportedOperation: If the job already finished.
        """
        job = self._get(job_id)
        if not job.can_transition(JobStatus.CANCELLED):
            raise UnsupportedOperation(f"Cannot cancel a job that is {job.status.value}.")

        job.status = JobStatus.CANCELLED
        job.eta_seconds = None
        job.completed_at = datetime.now()
        if job_id in self._queue_order:
            self._queue_order.remove(job_id)

        handle = self._handles.get(job_id)
        if handle is not None:
            self._dying[job_id] = self._output_key(job)
            self._run_in_background(self.adapter.terminate(handle, self.termination_grace), f"terminate-{job_id}")
        self.logger.info(f"Cancelled job {job_id}")

        await self._emit(QueueEvent(EVENT_QUEUE_CHANGED, job=job.snapshot()))
        await self._promote()

    def get_queue_status(self) -> QueueStatus:
        """Returns the current counts. Has no side effects."""
        counts = {status: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status] += 1
        return QueueStatus(
            total=len(self.jobs),
            queued=counts[JobStatus.QUEUED],
            active=counts[JobStatus.ACTIVE],
            paused=counts[JobStatus.PAUSED],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
            max_concurrent=self.max_concurrent,
            unavailable_tools=tuple(kind.value for kind in self._unavailable),
        )

    def get_job(self, job_id: str) -> Job:
        """Returns a snapshot of one job."""
        return self._get(job_id).snapshot()

    def list_jobs(self) -> List[Job]:
        """Returns snapshots of all jobs in creation order."""
        return [job.snapshot() for job in self.jobs.values()]

    async def clear_finished(self) -> List[str]:
        """Forgets terminal jobs whose processes have been reaped. Returns their ids."""
        removable = [job_id for job_id, job in self.jobs.items()
                     if job.is_terminal and job_id not in self._dying and job_id not in self._handles]
        for job_id in removable:
            del self.jobs[job_id]
        if removable:
            self.logger.info(f"Cleared {len(removable)} finished job(s) from the queue.")
            await self._emit(QueueEvent(EVENT_QUEUE_CHANGED))
        return removable

    async def set_max_concurrent(self, max_concurrent: int):
        """Changes the concurrency bound. Raising it promotes waiting jobs immediately."""
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        await self._promote()

    async def mark_tool_available(self, kind: Union[JobKind, str]):
        """Clears a ToolUnavailable condition and resumes promotion for that kind."""
        kind = JobKind(kind)
        if self._unavailable.pop(kind, None) is not None:
            self.logger.info(f"{TOOL_NAMES[kind.value]} marked available again.")
            await self._emit(QueueEvent(EVENT_QUEUE_CHANGED))
        await self._promote()

    async def join(self):
        """Waits until every started process has been reaped and nothing more can be promoted."""
        while self._monitors or self._background:
            await asyncio.gather(*self._monitors.values(), *self._background, return_exceptions=True)

    async def shutdown(self):
        """Cancels every unfinished job and waits for all processes to exit."""
        self.logger.info("Shutting down job queue...")
        self._closing = True
        for job_id, job in list(self.jobs.items()):
            if not job.is_terminal:
                await self.cancel(job_id)
        await self.join()

    async def cleanup_temporary_files(self):
        """Cleans up partial download files in the adapter's temp directory."""
        temp_dir = self.adapter.temp_dir
        if not await asyncio.to_thread(temp_dir.is_dir): return
        count = 0

        items_to_check = await asyncio.to_thread(lambda: list(temp_dir.iterdir()))
        for item in items_to_check:
            if item.suffix in TEMP_FILE_SUFFIXES:
                try:
                    await asyncio.to_thread(item.unlink)
                    count += 1
                except OSError as e:
                    self.logger.error(f"Error deleting temp file {item.name}: {e}")
        if count > 0: self.logger.info(f"Deleted {count} temporary file(s).")

    # --- Internals ---

    def _get(self, job_id: str) -> Job:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise JobNotFound(f"No job with id '{job_id}'.") from None

    def _validate_spec(self, spec: Union[JobSpec, Dict[str, Any]]) -> JobSpec:
        if isinstance(spec, JobSpec):
            return spec
        if not isinstance(spec, dict):
            raise InvalidJobSpec("A job spec must be a mapping of fields.")
        try:
            return JobSpec.model_validate(spec)
        except ValidationError as e:
            error_details = e.errors()[0]
            field_name = '.'.join(str(part) for part in error_details['loc']) or 'spec'
            raise InvalidJobSpec(f"Error in field '{field_name}': {error_details['msg']}") from None

    @staticmethod
    def _output_key(job: Job) -> Tuple[str, ...]:
        """Identifies what a job writes: an exact file for conversions, URL + directory for downloads."""
        if job.kind is JobKind.CONVERSION:
            return ('file', str(Path(job.spec.destination).expanduser().resolve()))
        return ('download', str(Path(job.spec.destination).expanduser().resolve()), job.spec.source)

    def _active_count(self) -> int:
        active = sum(1 for job in self.jobs.values() if job.status is JobStatus.ACTIVE)
        return active + len(self._starting)

    def _next_promotable(self) -> Optional[Job]:
        reserved = set(self._dying.values())
        for job_id in self._queue_order:
            job = self.jobs[job_id]
            if job.kind in self._unavailable or job_id in self._starting:
                continue
            if self._output_key(job) in reserved:
                # FIFO: nothing behind this job starts before it does
                return None
            return job
        return None

    async def _promote(self):
        """Starts queued jobs in FIFO order while there are free slots."""
        if self._closing:
            return
        events: List[QueueEvent] = []
        async with self._promotion_lock:
            while self._active_count() < self.max_concurrent:
                job = self._next_promotable()
                if job is None:
                    break
                event = await self._start_job(job)
                if event is not None:
                    events.append(event)
        # listeners may call back into the manager, so they run outside the lock
        for event in events:
            await self._emit(event)

    async def _start_job(self, job: Job) -> Optional[QueueEvent]:
        self._starting.add(job.job_id)
        try:
            argv = self.adapter.build_arguments(job)
            handle = await self.adapter.spawn(job.kind, argv)
        except ToolUnavailable as e:
            return self._mark_tool_unavailable(job.kind, e)
        except Exception as e:
            self.logger.exception(f"Could not start job {job.job_id}")
            if job.job_id in self._queue_order:
                self._queue_order.remove(job.job_id)
            if job.is_terminal:
                return None
            job.status = JobStatus.FAILED
            job.completed_at = datetime.now()
            job.error_message = f"Could not start {TOOL_NAMES[job.kind.value]}: {e}"
            return QueueEvent(EVENT_ERROR, job=job.snapshot(), error=JobFailed(job.job_id, -1, job.error_message))
        finally:
            self._starting.discard(job.job_id)

        if job.job_id in self._queue_order:
            self._queue_order.remove(job.job_id)
        self._handles[job.job_id] = handle
        self._monitors[job.job_id] = asyncio.create_task(self._monitor(job, handle), name=f"monitor-{job.job_id}")

        if job.status is JobStatus.CANCELLED:
            # cancelled while the process was being spawned
            self._dying[job.job_id] = self._output_key(job)
            self._run_in_background(self.adapter.terminate(handle, self.termination_grace), f"terminate-{job.job_id}")
            return None

        job.status = JobStatus.ACTIVE
        job.phase = 'starting'
        self.logger.info(f"Started job {job.job_id} (PID: {handle.pid})")
        return QueueEvent(EVENT_QUEUE_CHANGED, job=job.snapshot())

    def _mark_tool_unavailable(self, kind: JobKind, error: ToolUnavailable) -> Optional[QueueEvent]:
        if kind in self._unavailable:
            return None
        self._unavailable[kind] = str(error)
        waiting = sum(1 for job_id in self._queue_order if self.jobs[job_id].kind is kind)
        self.logger.error(f"{error} {waiting} queued {kind.value} job(s) are on hold until it is available.")
        return QueueEvent(EVENT_TOOL_UNAVAILABLE, error=error)

    async def _monitor(self, job: Job, handle: ProcessHandle):
        """Streams a process's output into progress events and finalizes the job on exit."""
        state = ProgressState(phase='download' if job.kind is JobKind.DOWNLOAD else 'converting')
        diagnostics: Deque[str] = deque(maxlen=20)
        error_lines: List[str] = []

        async def consume(lines, is_stderr: bool):
            async for line in lines:
                self.logger.debug(f"[{job.job_id}] {line}")
                update = self.parser.parse_line(line, state)
                if update is not None:
                    await self._apply_progress(job, update, state)
                    continue
                if line.startswith('ERROR:'):
                    error_lines.append(line.strip())
                elif is_stderr:
                    diagnostics.append(line.strip())

        exit_code: Optional[int] = None
        try:
            await asyncio.gather(consume(handle.stdout_lines(), False), consume(handle.stderr_lines(), True))
            exit_code = await handle.wait()
        except Exception:
            self.logger.exception(f"Error while monitoring job {job.job_id}")
            try: handle.kill()
            except (ProcessLookupError, OSError): pass # Already gone
            exit_code = await handle.wait()
        finally:
            self._handles.pop(job.job_id, None)
            self._dying.pop(job.job_id, None)

        try:
            if job.status is JobStatus.CANCELLED:
                self.logger.info(f"Process for cancelled job {job.job_id} exited with code {exit_code}.")
            elif exit_code == 0:
                await self._complete(job, state)
            else:
                if error_lines:
                    message = error_lines[-1]
                elif diagnostics:
                    message = diagnostics[-1]
                else:
                    message = f"{TOOL_NAMES[job.kind.value]} exited with code {exit_code}"
                await self._fail(job, exit_code, message)
            await self._promote()
        finally:
            self._monitors.pop(job.job_id, None)

    async def _apply_progress(self, job: Job, update: ProgressUpdate, state: ProgressState):
        if job.is_terminal:
            return
        job.phase = update.phase
        if update.percent is not None:
            job.progress = update.percent
        if update.phase_started:
            job.eta_seconds = None
        elif update.eta_seconds is not None:
            job.eta_seconds = update.eta_seconds
        if state.output_file:
            job.output_file = state.output_file
            if not job.spec.title and job.kind is JobKind.DOWNLOAD:
                job.title = Path(state.output_file).stem or job.title
        await self._emit(QueueEvent(EVENT_PROGRESS, job=job.snapshot(), progress=update))

    async def _complete(self, job: Job, state: ProgressState):
        job.status = JobStatus.COMPLETED
        job.progress = 100.0
        job.eta_seconds = 0.0
        job.phase = 'done'
        job.completed_at = datetime.now()
        if job.kind is JobKind.CONVERSION:
            job.output_file = job.spec.destination
        elif state.output_file:
            job.output_file = state.output_file
        self.logger.info(f"Job {job.job_id} completed: {job.output_file}")
        await self._emit(QueueEvent(EVENT_COMPLETE, job=job.snapshot()))

    async def _fail(self, job: Job, exit_code: Optional[int], message: str):
        job.status = JobStatus.FAILED
        job.eta_seconds = None
        job.completed_at = datetime.now()
        job.error_message = message
        self.logger.warning(f"Job {job.job_id} failed with exit code {exit_code}: {message}")
        failure = JobFailed(job.job_id, exit_code if exit_code is not None else -1, message)
        await self._emit(QueueEvent(EVENT_ERROR, job=job.snapshot(), error=failure))

    def _run_in_background(self, coro: Awaitable[Any], name: str):
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._task_done_callback)

    def _task_done_callback(self, task: asyncio.Task):
        """Removes a finished background task and logs its exception, if any."""
        self._background.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")
