from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .client import AdkClient
from .config import BridgeConfig
from .errors import AdkError, AdkHTTPError, AdkTimeoutError, DocumentProcessingError, describe_error
from .logging import get_logger
from .models import DocumentUpload

logger = get_logger(__name__)

ProgressCallback = Callable[[str, float], None]
CompleteCallback = Callable[[str, DocumentUpload], None]
ErrorCallback = Callable[[str, str], None]


@dataclass(slots=True, frozen=True)
class DocumentFile:
    """A file selected by the host for processing.

    Attributes:
        id: Host-side identifier used in callbacks.
        filename: Original file name.
        content: Raw file bytes.
        mime_type: Content type sent with the upload.
    """

    id: str
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


class DocumentProcessor:
    """Uploads documents and polls the runtime until extraction finishes.

    Lists are processed in fixed-size batches so at most `batch_size`
    uploads are in flight at once.
    """

    def __init__(
        self,
        client: AdkClient,
        *,
        batch_size: int = 3,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        poll_interval: float = 2.0,
        max_polls: int = 30,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._client = client
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._poll_interval = poll_interval
        self._max_polls = max_polls

    @classmethod
    def from_config(cls, config: BridgeConfig, client: AdkClient) -> DocumentProcessor:
        """Create a processor using the config's batch size and retry count."""
        return cls(client, batch_size=config.document_batch_size, max_retries=config.retries)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def process_document(
        self,
        session_id: str,
        file: DocumentFile,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> DocumentUpload:
        """Upload one file and wait for its processing result.

        Failed attempts are retried with exponential backoff, except for
        4xx responses which will not succeed on retry.
        """
        last: AdkError | None = None
        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                await asyncio.sleep(self._retry_base_delay * (2 ** (attempt - 1)))
            _notify(on_progress, file.id, 10.0)
            try:
                upload = await self._client.upload_document(
                    session_id,
                    file.filename,
                    file.content,
                    mime_type=file.mime_type,
                )
                _notify(on_progress, file.id, 50.0)
                return await self.wait_for_completion(
                    upload.id,
                    on_progress=(
                        (lambda progress: _notify(on_progress, file.id, progress))
                        if on_progress is not None
                        else None
                    ),
                )
            except AdkHTTPError as exc:
                last = exc
                if exc.is_client_error:
                    break
            except DocumentProcessingError as exc:
                last = exc
                break
            except AdkError as exc:
                last = exc
            logger.warning(
                "document_attempt_failed",
                filename=file.filename,
                attempt=attempt + 1,
                error=f"{last.__class__.__name__}: {last}",
            )
            _notify(on_progress, file.id, 0.0)
        if last is None:
            raise DocumentProcessingError(
                f"no upload attempt was made for {file.filename!r}", upload_id=""
            )
        raise last

    async def process_documents(
        self,
        session_id: str,
        files: Sequence[DocumentFile],
        *,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> list[DocumentUpload]:
        """Process files batch by batch; returns the successful uploads in order."""
        results: list[DocumentUpload] = []
        for start in range(0, len(files), self._batch_size):
            batch = files[start:start + self._batch_size]
            outcomes = await asyncio.gather(
                *(self.process_document(session_id, file, on_progress=on_progress) for file in batch),
                return_exceptions=True,
            )
            for file, outcome in zip(batch, outcomes):
                if isinstance(outcome, DocumentUpload):
                    results.append(outcome)
                    if on_complete is not None:
                        on_complete(file.id, outcome)
                elif isinstance(outcome, AdkError):
                    _, message = describe_error(outcome)
                    logger.warning("document_failed", filename=file.filename, error=str(outcome))
                    if on_error is not None:
                        on_error(file.id, message)
                else:
                    raise outcome
        return results

    async def wait_for_completion(
        self,
        upload_id: str,
        *,
        on_progress: Callable[[float], None] | None = None,
    ) -> DocumentUpload:
        """Poll the upload status until it is completed or failed."""
        for attempt in range(self._max_polls):
            upload = await self._client.get_document_status(upload_id)
            if upload.status == "completed":
                if on_progress is not None:
                    on_progress(100.0)
                return upload
            if upload.status == "failed":
                errors = upload.results.errors if upload.results is not None else []
                raise DocumentProcessingError(
                    f"document {upload_id!r} failed: {'; '.join(errors) or 'no details'}",
                    upload_id=upload_id,
                )
            if on_progress is not None:
                on_progress(min(50.0 + (attempt / self._max_polls) * 50.0, 99.0))
            await asyncio.sleep(self._poll_interval)
        raise AdkTimeoutError(
            f"document {upload_id!r} still processing after {self._max_polls} polls"
        )


def _notify(callback: ProgressCallback | None, file_id: str, progress: float) -> None:
    if callback is not None:
        callback(file_id, progress)
