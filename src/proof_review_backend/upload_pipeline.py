"""
Proof upload orchestration.

This module takes files chosen by an admin and turns each of them into a
Proof record:
- Validation against the admin size ceiling and type allow-list
- Upload to the object store with progress reporting and cancellation
- Cut contour analysis of PDFs, run alongside the upload
- Persistence through the proof store

Each file is an independent task with its own state, attempt counter and
event log. A failure in one task never touches another.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from omegaconf import DictConfig

from .errors import AnalysisError, FileValidationError, ProofReviewError, TransitionRejected, TransportError, UploadCancelled
from .lifecycle import check_customer_action
from .models import (
    CutContourAnalysis,
    Order,
    ProofFileInput,
    ProofInput,
    ProofStatus,
    UploadDetail,
    UploadEvent,
    UploadProgress,
    UploadState,
    UploadSummary,
)
from .object_store import CancellationToken, ObjectStoreClient, optimized_url
from .pdf_analysis import PrintFileAnalyzer
from .proof_store import ProofStore
from .utils import normalize_tags, utcnow
from .validation import ADMIN_PROOF_MAX_BYTES, CUSTOMER_REVISION_MAX_BYTES, ensure_valid, is_pdf, validate_file

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PROOF_FOLDER = "proofs"
DEFAULT_CUSTOMER_FOLDER = "customer-files"
DEFAULT_RETAIN_FINISHED = 500

IN_FLIGHT_STATES = frozenset({UploadState.QUEUED, UploadState.UPLOADING, UploadState.PERSISTING})

# (filename, data, content_type)
SubmittedFile = Tuple[str, bytes, Optional[str]]


@dataclass
class UploadTask:
    """
    Internal state of one file moving through the pipeline.

    Attributes:
        id: Upload identifier (hex UUID)
        order_id: Order the resulting proof is attached to
        filename: Original filename as chosen by the admin
        data: File bytes, released once the task completes
        token: Cancellation flag for the current attempt
        attempts: Number of attempts started so far (1-based once running)
        proof_id: Proof created or replaced once the task completes
        analysis: Cut contour analysis for PDFs, when it succeeded
        analysis_error: Why analysis failed; never blocks completion
        events: Chronological log of the task's steps
    """

    id: str
    order_id: str
    filename: str
    data: bytes
    content_type: Optional[str]
    cut_lines: List[str]
    created_at: datetime
    updated_at: datetime
    order_item_id: Optional[str] = None
    replace_proof_id: Optional[str] = None
    state: UploadState = UploadState.QUEUED
    attempts: int = 0
    progress: int = 0
    token: CancellationToken = field(default_factory=CancellationToken)
    proof_id: Optional[str] = None
    error: Optional[str] = None
    analysis: Optional[CutContourAnalysis] = None
    analysis_error: Optional[str] = None
    future: Optional[Future] = None
    events: List[UploadEvent] = field(default_factory=list)

    def is_retryable(self, max_attempts: int) -> bool:
        if self.state == UploadState.CANCELLED:
            return True
        return self.state == UploadState.FAILED and self.attempts < max_attempts

    def to_summary(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> UploadSummary:
        return UploadSummary(
            id=self.id,
            order_id=self.order_id,
            filename=self.filename,
            state=self.state,
            attempts=self.attempts,
            progress=self.progress,
            retryable=self.is_retryable(max_attempts),
            order_item_id=self.order_item_id,
            replace_proof_id=self.replace_proof_id,
            proof_id=self.proof_id,
            error=self.error,
            analysis=self.analysis,
            analysis_error=self.analysis_error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_detail(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> UploadDetail:
        summary = self.to_summary(max_attempts)
        return UploadDetail(**summary.model_dump(), events=list(self.events))


class UploadPipeline:
    """
    Runs proof uploads on a thread pool.

    Thread Safety:
        Task state lives in a registry guarded by a lock. Worker threads only
        change a task through the lock-protected ``_update`` and ``_append_event``
        helpers.

    Attributes:
        store: Proof store the finished uploads are persisted to
        object_store: Remote store receiving the file bytes
        analyzer: Cut contour analyzer used for PDFs
    """

    def __init__(
        self,
        store: ProofStore,
        object_store: ObjectStoreClient,
        analyzer: Optional[PrintFileAnalyzer] = None,
        max_workers: int = 4,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        admin_max_bytes: int = ADMIN_PROOF_MAX_BYTES,
        customer_max_bytes: int = CUSTOMER_REVISION_MAX_BYTES,
        proof_folder: str = DEFAULT_PROOF_FOLDER,
        customer_folder: str = DEFAULT_CUSTOMER_FOLDER,
        default_cut_lines: Sequence[str] = ("green",),
        retain_finished: int = DEFAULT_RETAIN_FINISHED,
    ) -> None:
        self.store = store
        self.object_store = object_store
        self.analyzer = analyzer or PrintFileAnalyzer()
        self.max_attempts = max_attempts
        self.admin_max_bytes = admin_max_bytes
        self.customer_max_bytes = customer_max_bytes
        self.proof_folder = proof_folder
        self.customer_folder = customer_folder
        self.default_cut_lines = list(default_cut_lines)
        self.retain_finished = retain_finished
        self._tasks: Dict[str, UploadTask] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="proof-upload")
        # Separate pool so an upload waiting on its analysis can never starve it
        self._analysis_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="proof-analysis")

    @classmethod
    def from_config(
        cls,
        config: DictConfig,
        store: ProofStore,
        object_store: ObjectStoreClient,
        analyzer: Optional[PrintFileAnalyzer] = None,
    ) -> "UploadPipeline":
        uploads = config.uploads
        return cls(
            store=store,
            object_store=object_store,
            analyzer=analyzer or PrintFileAnalyzer.from_config(config),
            max_workers=int(uploads.max_workers),
            max_attempts=int(uploads.max_attempts),
            admin_max_bytes=int(uploads.admin_max_bytes),
            customer_max_bytes=int(uploads.customer_max_bytes),
            proof_folder=str(uploads.proof_folder),
            customer_folder=str(uploads.customer_folder),
            default_cut_lines=list(uploads.default_cut_lines),
            retain_finished=int(uploads.retain_finished),
        )

    # Queries

    def get_upload(self, upload_id: str) -> Optional[UploadDetail]:
        with self._lock:
            task = self._tasks.get(upload_id)
            return task.to_detail(self.max_attempts) if task else None

    def list_uploads(self, order_id: Optional[str] = None) -> List[UploadSummary]:
        """Uploads sorted by creation time (newest first), optionally for one order."""
        with self._lock:
            tasks = [task for task in self._tasks.values() if order_id is None or task.order_id == order_id]
            tasks.sort(key=lambda task: task.created_at, reverse=True)
            return [task.to_summary(self.max_attempts) for task in tasks]

    def local_pending(self, order_id: str) -> int:
        """Number of uploads for the order that have not yet become proofs."""
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.order_id == order_id and task.state in IN_FLIGHT_STATES)

    # Commands

    def submit(
        self,
        order_id: str,
        files: Sequence[SubmittedFile],
        cut_lines: Optional[Sequence[str]] = None,
        order_item_id: Optional[str] = None,
        replace_proof_id: Optional[str] = None,
    ) -> List[UploadSummary]:
        """
        Register one upload task per file and start them.

        Args:
            order_id: Order the proofs belong to
            files: ``(filename, data, content_type)`` tuples
            cut_lines: Cut line tags for every file (defaults to ``["green"]``)
            order_item_id: Order item the new proofs are linked to
            replace_proof_id: Existing proof whose file is swapped (single file only)

        Files that fail validation come back as ``invalid`` straight away and
        are never scheduled; the rest of the batch is unaffected.

        Returns:
            One summary per file, in submission order

        Raises:
            NotFoundError: If the order (or the proof being replaced) does not exist
            FileValidationError: If no files were given, or several files target one proof
        """
        if not files:
            raise FileValidationError("No files selected")
        if replace_proof_id is not None and len(files) != 1:
            raise FileValidationError("A proof can only be replaced by a single file")

        if replace_proof_id is not None:
            self.store.get_proof(order_id, replace_proof_id)
        else:
            self.store.get_proofs_for_order(order_id)

        tags = normalize_tags(cut_lines) or list(self.default_cut_lines)
        now = utcnow()
        tasks = [
            UploadTask(
                id=uuid4().hex,
                order_id=order_id,
                filename=filename,
                data=data,
                content_type=content_type,
                cut_lines=tags,
                created_at=now,
                updated_at=now,
                order_item_id=order_item_id,
                replace_proof_id=replace_proof_id,
            )
            for filename, data, content_type in files
        ]

        with self._lock:
            for task in tasks:
                self._tasks[task.id] = task
                validation = validate_file(task.filename, len(task.data), task.content_type, max_bytes=self.admin_max_bytes)
                if not validation.valid:
                    task.state = UploadState.INVALID
                    task.error = validation.error
                    task.data = b""
                    task.events.append(UploadEvent(timestamp=now, message=f"Validation failed: {validation.error}"))
                    logger.info(f"Upload {task.id} ({task.filename}) rejected: {validation.error}")
                    continue
                task.events.append(UploadEvent(timestamp=now, message="Upload registered and awaiting execution."))
                self._start(task)
            summaries = [task.to_summary(self.max_attempts) for task in tasks]
            self._evict_finished()

        queued = sum(1 for summary in summaries if summary.state == UploadState.QUEUED)
        logger.info(f"Queued {queued} of {len(tasks)} upload(s) for order {order_id}")
        return summaries

    def iter_outcomes(self, upload_ids: Sequence[str]) -> Iterator[UploadSummary]:
        """Yield each upload's summary as its current attempt finishes, in completion order."""
        with self._lock:
            futures = {self._tasks[upload_id].future: upload_id for upload_id in upload_ids if self._tasks.get(upload_id)}
        for future in as_completed([future for future in futures if future is not None]):
            with self._lock:
                task = self._tasks.get(futures[future])
                summary = task.to_summary(self.max_attempts) if task else None
            if summary is not None:
                yield summary

    def wait(self, upload_ids: Sequence[str]) -> List[UploadSummary]:
        """Block until the given uploads finish and return their summaries in the given order."""
        list(self.iter_outcomes(upload_ids))
        with self._lock:
            return [self._tasks[upload_id].to_summary(self.max_attempts) for upload_id in upload_ids if upload_id in self._tasks]

    def cancel(self, upload_id: str) -> bool:
        """
        Cancel an upload that has not been persisted yet.

        Returns:
            True if the cancellation took effect, False if the upload is unknown
            or has already finished (a completed upload is a proof now and must
            be removed through the proof store instead)
        """
        with self._lock:
            task = self._tasks.get(upload_id)
            # once persisting has begun the proof row is about to exist
            if task is None or task.state not in (UploadState.QUEUED, UploadState.UPLOADING):
                return False
            task.token.cancel()
            if task.state == UploadState.QUEUED:
                task.state = UploadState.CANCELLED
                task.updated_at = utcnow()
                task.events.append(UploadEvent(timestamp=task.updated_at, message="Upload cancelled before it started."))
        logger.info(f"Cancellation requested for upload {upload_id}")
        return True

    def retry(self, upload_id: str) -> Optional[UploadSummary]:
        """
        Start a new attempt for a failed or cancelled upload.

        Returns:
            The refreshed summary, or None if the upload is unknown

        Raises:
            TransitionRejected: If the upload is not retryable (still running,
                completed, invalid, or out of attempts)
        """
        with self._lock:
            task = self._tasks.get(upload_id)
            if task is None:
                return None
            if not task.is_retryable(self.max_attempts):
                raise TransitionRejected(f"Upload {upload_id} cannot be retried from state {task.state.value}")
            task.state = UploadState.QUEUED
            task.token = CancellationToken()
            task.progress = 0
            task.updated_at = utcnow()
            task.events.append(UploadEvent(timestamp=task.updated_at, message="Retry requested."))
            self._start(task)
            return task.to_summary(self.max_attempts)

    def upload_customer_revision(
        self,
        order_id: str,
        proof_id: str,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
        customer_notes: Optional[str] = None,
    ) -> Order:
        """
        Upload a customer's replacement artwork and request changes on the proof.

        Runs synchronously on the calling thread; the lifecycle guard is checked
        before any bytes leave the server.
        """
        ensure_valid(filename, len(data), content_type, max_bytes=self.customer_max_bytes)
        proof = self.store.get_proof(order_id, proof_id)
        check_customer_action(proof.status, ProofStatus.CHANGES_REQUESTED, customer_notes, has_replacement_file=True)

        stored = self.object_store.upload(
            data,
            filename,
            content_type=content_type,
            metadata={"orderId": order_id, "proofId": proof_id, "source": "customer-revision"},
            folder=self.customer_folder,
        )
        return self.store.submit_customer_revision(order_id, proof_id, stored, filename, customer_notes)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._analysis_executor.shutdown(wait=wait)

    # Internals

    def _start(self, task: UploadTask) -> None:
        # Caller holds the lock
        task.attempts += 1
        task.error = None
        task.future = self._executor.submit(self._run, task.id, task.attempts)

    def _update(self, upload_id: str, **kwargs) -> None:
        with self._lock:
            task = self._tasks.get(upload_id)
            if task is None:
                return
            for key, value in kwargs.items():
                setattr(task, key, value)
            task.updated_at = utcnow()

    def _append_event(self, upload_id: str, message: str) -> None:
        event = UploadEvent(timestamp=utcnow(), message=message)
        with self._lock:
            task = self._tasks.get(upload_id)
            if task is None:
                return
            task.events.append(event)
            task.updated_at = event.timestamp

    def _set_progress(self, upload_id: str, progress: UploadProgress) -> None:
        with self._lock:
            task = self._tasks[upload_id]
            # a stale attempt must not move the bar backwards
            if progress.percentage > task.progress:
                task.progress = progress.percentage
                task.updated_at = utcnow()

    def _run(self, upload_id: str, attempt: int) -> None:
        """Execute one attempt of an upload task (runs in a worker thread)."""
        with self._lock:
            task = self._tasks.get(upload_id)
            if task is None:
                return
            token = task.token
            # superseded by a retry, or cancelled while queued
            if task.attempts != attempt or task.state != UploadState.QUEUED or token.cancelled:
                return
            filename, data, content_type = task.filename, task.data, task.content_type

        try:
            self._update(upload_id, state=UploadState.UPLOADING)
            self._append_event(upload_id, f"Attempt {attempt}: uploading {filename}.")

            analysis_future: Optional[Future] = None
            if is_pdf(filename, content_type):
                analysis_future = self._analysis_executor.submit(self.analyzer.analyze, data, filename)

            stored = self.object_store.upload(
                data,
                filename,
                content_type=content_type,
                metadata={
                    "orderId": task.order_id,
                    "selectedCut": "proof",
                    "selectedMaterial": "proof",
                    "cutLines": ",".join(task.cut_lines),
                },
                on_progress=lambda progress: self._set_progress(upload_id, progress),
                cancel_token=token,
                folder=self.proof_folder,
            )
            self._append_event(upload_id, f"Stored as {stored.public_id}.")

            if analysis_future is not None:
                self._collect_analysis(upload_id, analysis_future)

            self._begin_persisting(upload_id, token)
            proof_id = self._persist(task, stored.public_id, optimized_url(stored.url))

            self._update(upload_id, state=UploadState.COMPLETED, proof_id=proof_id, progress=100, data=b"")
            self._append_event(upload_id, f"Proof {proof_id} saved.")
            logger.info(f"Upload {upload_id} completed as proof {proof_id}")
        except UploadCancelled:
            self._update(upload_id, state=UploadState.CANCELLED)
            self._append_event(upload_id, f"Attempt {attempt}: cancelled.")
            logger.info(f"Upload {upload_id} cancelled")
        except TransportError as exc:
            exc.attempt = attempt
            self._update(upload_id, state=UploadState.FAILED, error=f"Attempt {attempt}: {exc}")
            self._append_event(upload_id, f"Attempt {attempt}: upload failed: {exc}")
            logger.warning(f"Upload {upload_id} attempt {attempt} failed: {exc}")
        except ProofReviewError as exc:
            self._update(upload_id, state=UploadState.FAILED, error=f"Attempt {attempt}: {exc}")
            self._append_event(upload_id, f"Attempt {attempt}: saving the proof failed: {exc}")
            logger.warning(f"Upload {upload_id} could not be saved: {exc}")
        except Exception as exc:
            self._update(upload_id, state=UploadState.FAILED, error=f"Attempt {attempt}: {exc}")
            self._append_event(upload_id, f"Attempt {attempt}: unexpected error: {exc}")
            logger.exception(f"Upload {upload_id} crashed")
        finally:
            self._settle(upload_id)

    def _settle(self, upload_id: str) -> None:
        with self._lock:
            task = self._tasks.get(upload_id)
            # only a further attempt needs the bytes
            if task is not None and task.state not in IN_FLIGHT_STATES and not task.is_retryable(self.max_attempts):
                task.data = b""
            self._evict_finished()

    def _evict_finished(self) -> None:
        # Caller holds the lock
        finished = [
            task
            for task in self._tasks.values()
            if task.state not in IN_FLIGHT_STATES and not task.is_retryable(self.max_attempts)
        ]
        excess = len(finished) - self.retain_finished
        if excess <= 0:
            return
        finished.sort(key=lambda task: task.updated_at)
        for task in finished[:excess]:
            del self._tasks[task.id]
        logger.debug(f"Evicted {excess} finished upload(s)")

    def _begin_persisting(self, upload_id: str, token: CancellationToken) -> None:
        with self._lock:
            token.raise_if_cancelled()
            task = self._tasks[upload_id]
            task.state = UploadState.PERSISTING
            task.updated_at = utcnow()

    def _collect_analysis(self, upload_id: str, analysis_future: Future) -> None:
        try:
            analysis: CutContourAnalysis = analysis_future.result()
        except AnalysisError as exc:
            self._update(upload_id, analysis=None, analysis_error=str(exc))
            self._append_event(upload_id, f"Cut contour analysis failed: {exc}")
            return
        self._update(upload_id, analysis=analysis, analysis_error=None)
        if analysis.dimensions_inches is not None:
            dims = analysis.dimensions_inches
            self._append_event(upload_id, f'Cut contour found: {dims.width}" x {dims.height}".')
        else:
            self._append_event(upload_id, "No cut contour found.")

    def _persist(self, task: UploadTask, public_id: str, url: str) -> str:
        with self._lock:
            analysis = task.analysis
        dimensions = analysis.dimensions_inches if analysis and analysis.has_cut_contour else None

        if task.replace_proof_id is not None:
            self.store.replace_proof_file(
                task.order_id,
                task.replace_proof_id,
                ProofFileInput(
                    file_url=url,
                    file_public_id=public_id,
                    title=task.filename,
                    cut_lines=task.cut_lines,
                    extracted_dimensions=dimensions,
                ),
            )
            return task.replace_proof_id

        order = self.store.add_proof(
            task.order_id,
            ProofInput(
                file_url=url,
                file_public_id=public_id,
                title=task.filename,
                order_item_id=task.order_item_id,
                cut_lines=task.cut_lines,
                extracted_dimensions=dimensions,
            ),
        )
        return next(proof.id for proof in order.proofs if proof.file_public_id == public_id)
