"""
Batch Session

Owns the image tasks of one upload batch and runs them through the
recognition service with a fixed-size pool of worker threads.

Each run seeds a FIFO queue with every waiting or failed task and starts
exactly min(concurrency_limit, len(work)) workers. Workers dequeue until the
queue is empty or the run is cancelled; a task already in flight always
finishes. Task status and progress counters are only touched under the
session lock, the recognition call is made outside it.
"""

import io
import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from PIL import Image, UnidentifiedImageError

from .config import settings
from .models import (
    DISPATCHABLE_STATUSES,
    SUPPORTED_MEDIA_TYPES,
    AnalysisOptions,
    ExerciseResult,
    ImagePayload,
    ImageTask,
    Progress,
    TaskSnapshot,
    TaskStatus,
)
from .normalizer import normalize_content
from .recognition import CredentialError, RecognitionClient

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ["png", "jpg", "jpeg", "gif", "webp"]

_MEDIA_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


class InvalidImageError(ValueError):
    """Raised when image bytes are empty, too large or not a supported format."""
    pass


class TaskNotFoundError(KeyError):
    """Raised when a task id is not part of the session."""
    pass


class RunInProgressError(RuntimeError):
    """Raised when an operation needs the session to be idle."""
    pass


class BatchRunError(RuntimeError):
    """Raised when a run ended because of an unexpected worker failure."""
    pass


UpdateCallback = Callable[[TaskSnapshot, Progress], None]


def default_options() -> AnalysisOptions:
    """Analysis options from settings."""
    return AnalysisOptions(
        revise_text=settings.revise_text,
        bold_keywords=settings.bold_keywords,
        suggest_hints=settings.suggest_hints,
    )


def detect_media_type(data: bytes) -> str:
    """
    Sniff the media type of image bytes with Pillow.

    Raises:
        InvalidImageError: If Pillow cannot identify the image
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImageError("Corrupted or unsupported image format") from e

    media_type = Image.MIME.get(image_format) if image_format else None
    if not media_type:
        raise InvalidImageError(f"Unsupported image format: {image_format}")
    return media_type


class _Run:
    """State of one execution of the worker pool."""

    def __init__(self, number: int, options: AnalysisOptions, work: List[str]):
        self.number = number
        self.options = options
        self.queue: "queue.Queue[str]" = queue.Queue()
        for task_id in work:
            self.queue.put(task_id)
        self.size = len(work)
        self.cancelled = threading.Event()
        self.finished = threading.Event()
        self.workers: List[threading.Thread] = []
        self.live_workers = 0
        self.failure: Optional[BaseException] = None
        self.started_at = time.time()


class BatchSession:
    """
    A batch of exercise images and the worker pool that analyzes them.

    Only one run may be active at a time. Tasks added during a run wait for
    the next one.
    """

    def __init__(
        self,
        client: RecognitionClient,
        concurrency_limit: Optional[int] = None,
        verify_credentials: Optional[bool] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        """
        Initialize an empty session.

        Args:
            client: Recognition client shared by all workers
            concurrency_limit: Max simultaneous recognition calls (default from settings)
            verify_credentials: Check the API key before the first run (default from settings)
            on_update: Called with (snapshot, progress) after every status change
        """
        limit = settings.concurrency_limit if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError(f"concurrency_limit must be positive, got {limit}")

        self.client = client
        self.concurrency_limit = limit
        self.verify_credentials = (
            settings.verify_credentials_before_run
            if verify_credentials is None
            else verify_credentials
        )
        self.on_update = on_update

        self._lock = threading.RLock()
        self._tasks: Dict[str, ImageTask] = {}  # Insertion order is arrival order
        self._progress = Progress()
        self._run: Optional[_Run] = None
        self._run_count = 0
        self._credential_ok = False
        self._closed = False

    # --- Tasks ---

    def add_task(
        self,
        data: bytes,
        media_type: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> str:
        """
        Add an image to the session.

        Args:
            data: Raw image bytes
            media_type: Declared media type; sniffed with Pillow when omitted
            filename: Optional original file name, for display and logs

        Returns:
            Task ID

        Raises:
            InvalidImageError: If the image is empty, too large or unsupported
        """
        self._ensure_open()

        if not data:
            raise InvalidImageError("Image data is empty")

        size_mb = len(data) / (1024 * 1024)
        if size_mb > settings.max_image_size_mb:
            raise InvalidImageError(
                f"Image too large: {size_mb:.1f}MB (max: {settings.max_image_size_mb}MB)"
            )

        if media_type:
            media_type = media_type.lower().strip()
            media_type = _MEDIA_TYPE_ALIASES.get(media_type, media_type)
        else:
            media_type = detect_media_type(data)

        if media_type not in SUPPORTED_MEDIA_TYPES:
            raise InvalidImageError(f"Unsupported media type: {media_type}")

        payload = ImagePayload(data=data, media_type=media_type, filename=filename)
        task = ImageTask(payload=payload, media_type=media_type, filename=filename)

        with self._lock:
            self._tasks[task.id] = task

        logger.info(f"Added to session: {filename or media_type} (ID: {task.id[:13]})")
        return task.id

    def add_tasks(self, images: Iterable[bytes]) -> List[str]:
        """Add several images, sniffing each media type."""
        return [self.add_task(data) for data in images]

    def add_file(self, image_path: Path) -> str:
        """
        Add an image file.

        Raises:
            FileNotFoundError: If the file does not exist
            InvalidImageError: If the file is not a supported image
        """
        image_path = Path(image_path)
        if not image_path.is_file():
            raise FileNotFoundError(f"Image file not found: {image_path}")
        return self.add_task(image_path.read_bytes(), filename=image_path.name)

    def add_directory(
        self,
        directory: Path,
        recursive: bool = False,
        extensions: Optional[List[str]] = None,
    ) -> List[str]:
        """
        Add all images from a directory, in file name order.

        Args:
            directory: Directory to scan
            recursive: Whether to scan subdirectories
            extensions: File extensions to include (default: png, jpg, jpeg, gif, webp)

        Returns:
            List of added task IDs
        """
        extensions = extensions or IMAGE_EXTENSIONS
        directory = Path(directory)

        if not directory.is_dir():
            raise NotADirectoryError(f"Not a directory: {directory}")

        pattern = "**/*" if recursive else "*"
        files = sorted(
            {
                path
                for ext in extensions
                for path in directory.glob(f"{pattern}.{ext}")
                if path.is_file()
            }
        )

        task_ids = []
        for image_file in files:
            try:
                task_ids.append(self.add_file(image_file))
            except InvalidImageError as e:
                logger.warning(f"Skipping {image_file.name}: {e}")

        logger.info(f"Added {len(task_ids)} images from {directory}")
        return task_ids

    def remove_task(self, task_id: str) -> None:
        """
        Remove a task and release its image bytes.

        A queued task of the active run is skipped when dequeued; an in-flight
        task has its late result discarded.

        Raises:
            TaskNotFoundError: If the task is not in the session
        """
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                raise TaskNotFoundError(task_id)
            task.release()

        logger.info(f"Removed task {task_id[:13]}")

    def clear(self) -> None:
        """
        Remove every task.

        Raises:
            RunInProgressError: If a run is active
        """
        with self._lock:
            if self._is_running():
                raise RunInProgressError("Cannot clear the session while a run is active")
            for task in self._tasks.values():
                task.release()
            self._tasks.clear()

    # --- Reads ---

    def get(self, task_id: str) -> TaskSnapshot:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return task.snapshot()

    def snapshots(self) -> List[TaskSnapshot]:
        """All tasks in arrival order."""
        with self._lock:
            return [task.snapshot() for task in self._tasks.values()]

    def results(self) -> List[ExerciseResult]:
        """Successful exercises in arrival order."""
        with self._lock:
            return [
                task.result
                for task in self._tasks.values()
                if task.status == TaskStatus.SUCCESS and task.result is not None
            ]

    def progress(self) -> Progress:
        with self._lock:
            return self._progress.model_copy()

    @property
    def pending_count(self) -> int:
        """Tasks a new run would pick up."""
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.status in DISPATCHABLE_STATUSES)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._is_running()

    def get_status_summary(self) -> Dict:
        """
        Get session status summary.

        Returns:
            Dict with counts by status and the current progress
        """
        with self._lock:
            by_status = {status.value: 0 for status in TaskStatus}
            for task in self._tasks.values():
                by_status[task.status.value] += 1
            return {
                "total": len(self._tasks),
                "by_status": by_status,
                "running": self._is_running(),
                "progress": self._progress.model_dump(),
            }

    # --- Runs ---

    def start(self, options: Optional[AnalysisOptions] = None) -> int:
        """
        Start a run over every waiting or failed task.

        Returns immediately; workers run in background threads.

        Args:
            options: Analysis options for the whole run (default from settings)

        Returns:
            Number of tasks in the run, 0 if there was nothing to do

        Raises:
            CredentialError: If no API key is set or the key is rejected
            RunInProgressError: If a run is already active
        """
        self._ensure_open()
        options = options or default_options()
        if self.is_running:
            raise RunInProgressError("A run is already in progress")
        self._check_credentials()

        with self._lock:
            if self._is_running():
                raise RunInProgressError("A run is already in progress")

            work = [
                task.id for task in self._tasks.values() if task.status in DISPATCHABLE_STATUSES
            ]
            if not work:
                logger.info("No waiting or failed tasks to analyze")
                return 0

            self._run_count += 1
            run = _Run(self._run_count, options, work)
            self._run = run
            self._progress = Progress(completed=0, total=len(work))

            worker_count = min(self.concurrency_limit, len(work))
            run.live_workers = worker_count
            for index in range(worker_count):
                run.workers.append(
                    threading.Thread(
                        target=self._worker,
                        args=(run,),
                        name=f"mathscan-run{run.number}-worker{index + 1}",
                        daemon=True,
                    )
                )

        logger.info(f"Run {run.number}: analyzing {len(work)} images with {worker_count} workers")

        for thread in run.workers:
            try:
                thread.start()
            except RuntimeError as e:
                logger.error(f"Could not start {thread.name}: {e}")
                self._worker_exited(run, e)

        return len(work)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the active run's workers have all exited.

        Returns:
            True if the run finished (or there was none), False on timeout

        Raises:
            BatchRunError: If a worker died of an unexpected failure
        """
        run = self._run
        if run is None:
            return True
        if not run.finished.wait(timeout):
            return False
        if run.failure is not None:
            raise BatchRunError(f"Run {run.number} failed: {run.failure}") from run.failure
        return True

    def run(
        self,
        options: Optional[AnalysisOptions] = None,
        timeout: Optional[float] = None,
    ) -> Progress:
        """Start a run and wait for it. Returns the final progress."""
        if self.start(options):
            self.wait(timeout)
        return self.progress()

    def cancel(self) -> bool:
        """
        Stop the active run from dequeuing more tasks.

        In-flight tasks still finish and update their status.

        Returns:
            True if a run was active
        """
        with self._lock:
            run = self._run
            if run is None or run.finished.is_set():
                return False
            run.cancelled.set()

        logger.info(f"Run {run.number}: cancellation requested, in-flight tasks will finish")
        return True

    def close(self) -> None:
        """Cancel any active run, wait for it and release every task."""
        self.cancel()
        run = self._run
        if run is not None:
            run.finished.wait()

        with self._lock:
            for task in self._tasks.values():
                task.release()
            self._tasks.clear()
            self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- Internals ---

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Session is closed")

    def _is_running(self) -> bool:
        return self._run is not None and not self._run.finished.is_set()

    def _check_credentials(self) -> None:
        if not getattr(self.client, "api_key", None):
            raise CredentialError("No API key configured")

        if self.verify_credentials and not self._credential_ok:
            if not self.client.verify_credential():
                raise CredentialError("API key was rejected by the recognition service")
            self._credential_ok = True

    def _notify(self, task: ImageTask) -> None:
        """Report a status change. Caller holds the lock."""
        if self.on_update is None:
            return
        try:
            self.on_update(task.snapshot(), self._progress.model_copy())
        except Exception:
            logger.exception(f"Update callback failed for task {task.id[:13]}")

    def _worker(self, run: _Run) -> None:
        failure = None
        try:
            while not run.cancelled.is_set():
                try:
                    task_id = run.queue.get_nowait()
                except queue.Empty:
                    break
                self._process(run, task_id)
        except BaseException as e:
            logger.exception(f"Worker {threading.current_thread().name} crashed: {e!r}")
            failure = e
        finally:
            self._worker_exited(run, failure)

    def _process(self, run: _Run, task_id: str) -> None:
        """Analyze one task. Per-task failures become task state."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.released:
                logger.debug(f"Skipping removed task {task_id[:13]}")
                self._progress.completed += 1
                return
            task.transition(TaskStatus.ANALYZING)
            payload = task.payload
            label = task.filename or task.id[:13]
            self._notify(task)

        start_time = time.time()
        # Anything that escapes below still resolves the task
        outcome = {"error": "Analysis was interrupted"}
        try:
            raw = self.client.analyze(payload, run.options)
            result = raw.model_copy(update={"content": normalize_content(raw.content)})
            outcome = {"result": result}
            logger.info(f"Analyzed {label} in {time.time() - start_time:.1f}s: {result.title}")
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Analysis failed for {label}: {message}")
            outcome = {"error": message}
        finally:
            self._finish(task_id, **outcome)

    def _finish(
        self,
        task_id: str,
        result: Optional[ExerciseResult] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None:
                if error is not None:
                    task.mark_error(error)
                else:
                    task.mark_success(result)
            else:
                logger.info(f"Discarding result of removed task {task_id[:13]}")

            self._progress.completed += 1
            if task is not None:
                self._notify(task)

    def _worker_exited(self, run: _Run, failure: Optional[BaseException]) -> None:
        with self._lock:
            if failure is not None and run.failure is None:
                run.failure = failure
            run.live_workers -= 1
            if run.live_workers > 0:
                return

            elapsed = time.time() - run.started_at
            status = "cancelled" if run.cancelled.is_set() else "finished"
            logger.info(
                f"Run {run.number} {status}: {self._progress.completed}/{self._progress.total} "
                f"tasks in {elapsed:.1f}s"
            )
            run.finished.set()
