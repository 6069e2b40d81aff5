"""
Main conversion pipeline.

Orchestrates the full PDF to Word conversion:
1. Validate the request and resolve the page list
2. Per page (bounded page pool): render, preprocess, detect tables,
   validate grids, OCR table cells and body text through a shared OCR gate,
   assemble the page IR
3. Collect surviving pages in page order and write the DOCX

Page, table and OCR errors are recorded as FailureInfo entries on the
result; only configuration errors, total failure and write errors end the
job as Failed.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any, Callable, Tuple

import numpy as np

from .config import (
    PipelineConfig, ErrorCode, ErrorSeverity, JobStage, JobStatus,
    TableFallbackPolicy, TextFallbackPolicy
)
from .utils.assembler import ParagraphText, build_page_ir, build_table_ir
from .utils.export import DocxWriter
from .utils.images import PageImageBundle, preprocess_page
from .utils.io import PdfRenderer, TempStorage, save_image, save_json, save_text, export_zip
from .utils.ir import DocumentIr, DocumentMeta, OptionsSnapshot, PageIr, TableBlock
from .utils.ocr_gemini import OcrClient, CellBoxForOcr, map_gemini_error
from .utils.page_range import parse_page_range
from .utils.tables import OpenCVTableEngine, TableDetection
from .utils.text import clean_text, replacement_char_rate
from .utils.validation import validate_table

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 5000

CANCEL_REASON_CALLER = "caller"
CANCEL_REASON_FAIL_FAST = "fail_fast"


# ============================================================================
# Cancellation
# ============================================================================

class JobCanceledError(Exception):
    """Raised inside page workers once the job token is canceled."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Job canceled ({reason})")


class CancellationToken:
    """
    Cooperative cancellation flag shared by every worker of a job.

    ``cancel`` is idempotent: only the first call sets the reason. Linked
    tokens are canceled together with their source.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._linked: List["CancellationToken"] = []
        self.reason: Optional[str] = None

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCEL_REASON_CALLER) -> bool:
        """Cancel the token. Returns True only for the call that canceled it."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            linked = list(self._linked)

        for token in linked:
            token.cancel(reason)
        return True

    def link(self, token: "CancellationToken"):
        """Propagate this token's cancellation to ``token``."""
        with self._lock:
            if not self._event.is_set():
                self._linked.append(token)
                return
            reason = self.reason
        token.cancel(reason or CANCEL_REASON_CALLER)

    def unlink(self, token: "CancellationToken"):
        with self._lock:
            if token in self._linked:
                self._linked.remove(token)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if canceled meanwhile."""
        return self._event.wait(max(0.0, seconds))

    def raise_if_canceled(self):
        if self._event.is_set():
            raise JobCanceledError(self.reason)


def backoff_delay_ms(base_ms: int, attempt: int) -> int:
    """
    Delay before retrying after ``attempt`` (0-based) failed.

    Doubles per attempt and is capped at MAX_BACKOFF_MS; a non-positive
    base disables the delay.
    """
    if base_ms <= 0:
        return 0
    return min(base_ms * (2 ** max(0, attempt)), MAX_BACKOFF_MS)


# ============================================================================
# Job Data Classes
# ============================================================================

@dataclass
class ConvertJobRequest:
    """One conversion job."""
    pdf_path: str
    output_path: Optional[str] = None
    page_range_text: str = ""
    config: PipelineConfig = field(default_factory=PipelineConfig)


@dataclass
class FailureInfo:
    """A recorded failure of a page, table or OCR call."""
    error_code: str
    message: str
    severity: str = ErrorSeverity.RECOVERABLE
    stage: str = JobStage.INIT
    page_number: Optional[int] = None
    table_index: Optional[int] = None
    attempt: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageNumber": self.page_number,
            "tableIndex": self.table_index,
            "errorCode": self.error_code,
            "message": self.message,
            "severity": self.severity,
            "stage": self.stage,
            "attempt": self.attempt,
        }

    def __str__(self) -> str:
        where = []
        if self.page_number is not None:
            where.append(f"page {self.page_number}")
        if self.table_index is not None:
            where.append(f"table {self.table_index}")
        if self.attempt is not None:
            where.append(f"attempt {self.attempt}")
        location = f" ({', '.join(where)})" if where else ""
        return f"[{self.severity}] {self.error_code} at {self.stage}{location}: {self.message}"


@dataclass(frozen=True)
class JobProgress:
    """Point-in-time progress snapshot."""
    total_pages: int
    completed_pages: int
    current_page: Optional[int]
    stage: str
    message: str = ""


@dataclass
class ConvertResult:
    """Outcome of a conversion job."""
    status: str = JobStatus.PENDING
    output_path: Optional[str] = None
    failures: List[FailureInfo] = field(default_factory=list)
    elapsed_s: float = 0.0
    cancel_reason: Optional[str] = None
    document: Optional[DocumentIr] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "outputPath": self.output_path,
            "elapsedSeconds": round(self.elapsed_s, 3),
            "cancelReason": self.cancel_reason,
            "failures": [f.to_dict() for f in self.failures],
        }


ProgressCallback = Callable[[JobProgress], None]


@dataclass
class RetryOutcome:
    """Result of an OCR call driven through the retry loop."""
    result: Any = None
    attempt: int = 0
    accepted: bool = False


class _JobContext:
    """Shared state of one running job."""

    def __init__(
        self,
        request: ConvertJobRequest,
        token: CancellationToken,
        table_engine: OpenCVTableEngine,
        storage: Optional[TempStorage],
        progress: Optional[ProgressCallback],
        total_pages: int
    ):
        self.request = request
        self.config = request.config
        self.token = token
        self.table_engine = table_engine
        self.storage = storage
        self.progress = progress
        self.total_pages = total_pages
        self.ocr_gate = threading.BoundedSemaphore(max(1, self.config.runtime.ocr_concurrency))
        self.failures: List[FailureInfo] = []
        self.pages: List[PageIr] = []
        self.completed = 0
        self.lock = threading.Lock()
        # Serializes progress delivery so completed counts never go backwards
        self.report_lock = threading.Lock()

    @property
    def keep_files(self) -> bool:
        return self.storage is not None and self.config.diagnostics.keep_temp_files

    def add_failure(self, failure: FailureInfo):
        with self.lock:
            self.failures.append(failure)

        if failure.severity == ErrorSeverity.FATAL:
            logger.error(str(failure))
        else:
            logger.warning(str(failure))

        if self.config.validation.fail_fast and self.token.cancel(CANCEL_REASON_FAIL_FAST):
            logger.error(f"Fail-fast: aborting job after {failure.error_code}")

    def add_page(self, page: PageIr):
        with self.lock:
            self.pages.append(page)

    def mark_page_done(self) -> int:
        with self.lock:
            self.completed += 1
            return self.completed

    def report(self, page_number: Optional[int], stage: str, message: str = ""):
        if self.progress is None:
            return
        with self.report_lock:
            with self.lock:
                completed = self.completed
            snapshot = JobProgress(self.total_pages, completed, page_number, stage, message)
            try:
                self.progress(snapshot)
            except Exception:
                logger.exception("Progress callback raised")


# ============================================================================
# Conversion Service
# ============================================================================

class ConversionService:
    """
    Runs conversion jobs.

    Collaborators are injected so tests can replace the renderer and the OCR
    client with fakes.

    Usage:
        service = ConversionService(Pdf2ImageRenderer(), GeminiClient(config.gemini))
        result = service.convert(ConvertJobRequest("scan.pdf", config=config))
    """

    def __init__(
        self,
        renderer: PdfRenderer,
        ocr_client: OcrClient,
        table_engine: Optional[OpenCVTableEngine] = None,
        docx_writer: Optional[DocxWriter] = None,
        temp_storage: Optional[TempStorage] = None
    ):
        self.renderer = renderer
        self.ocr_client = ocr_client
        self.table_engine = table_engine
        self.docx_writer = docx_writer
        self.temp_storage = temp_storage

    def convert(
        self,
        request: ConvertJobRequest,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ConvertResult:
        """
        Convert a PDF to DOCX.

        Args:
            request: Job request with its immutable configuration
            progress: Optional callback receiving JobProgress snapshots, may be
                called concurrently from page workers
            cancel_token: Optional caller token; canceling it cancels the job

        Returns:
            ConvertResult with status, output path and failures
        """
        started = time.monotonic()
        config = request.config
        result = ConvertResult(status=JobStatus.RUNNING)
        logger.info(f"Starting conversion: {request.pdf_path}")

        # Stage 1: validate the request
        pdf_path = Path(request.pdf_path) if request.pdf_path else None
        if pdf_path is None or not pdf_path.is_file():
            return self._fail(result, started, ErrorCode.CFG_INVALID_PDF_PATH,
                              f"PDF path is invalid: {request.pdf_path!r}")

        layout = config.layout
        if (layout.header_percent < 0 or layout.footer_percent < 0
                or layout.header_percent + layout.footer_percent > layout.max_crop_total_percent):
            return self._fail(result, started, ErrorCode.CFG_CROP_TOO_LARGE,
                              "Header/footer crop percentages are too large.")

        result.output_path = str(self._resolve_output_path(request))

        try:
            page_count = self.renderer.get_page_count(pdf_path)
        except Exception:
            logger.exception("Failed to get page count")
            return self._fail(result, started, ErrorCode.PDF_GET_PAGECOUNT_FAILED,
                              "Unable to read the PDF page count.", stage=JobStage.PDF_OPEN)

        page_range = parse_page_range(request.page_range_text, page_count)
        for warning in page_range.warnings:
            logger.warning(f"Page range: {warning}")
        if page_range.has_error:
            return self._fail(result, started, ErrorCode.CFG_INVALID_PAGE_RANGE, page_range.error)

        logger.info(f"Processing {len(page_range.pages)} of {page_count} page(s)")

        # Stage 2: run the pages
        token = CancellationToken()
        if cancel_token is not None:
            cancel_token.link(token)

        storage = None
        if config.diagnostics.keep_temp_files:
            storage = self.temp_storage or TempStorage()
            storage.ensure_created()
        log_handler = self._attach_job_log(storage)

        ctx = _JobContext(
            request=request,
            token=token,
            table_engine=self.table_engine or OpenCVTableEngine(config.table),
            storage=storage,
            progress=progress,
            total_pages=len(page_range.pages),
        )

        try:
            self._run_pages(ctx, page_range.pages)
            return self._finish(ctx, result, started)
        finally:
            if cancel_token is not None:
                cancel_token.unlink(token)
            self._detach_job_log(log_handler)
            if storage is None and self.temp_storage is not None:
                self.temp_storage.cleanup()

    # ------------------------------------------------------------------------
    # Job level
    # ------------------------------------------------------------------------

    def _resolve_output_path(self, request: ConvertJobRequest) -> Path:
        if request.output_path:
            return Path(request.output_path)
        pdf_path = Path(request.pdf_path)
        directory = Path(request.config.output_directory) if request.config.output_directory else pdf_path.parent
        return directory / f"{pdf_path.stem}_converted.docx"

    def _fail(
        self,
        result: ConvertResult,
        started: float,
        code: str,
        message: str,
        stage: str = JobStage.INIT,
        failures: Optional[List[FailureInfo]] = None
    ) -> ConvertResult:
        failure = FailureInfo(code, message, ErrorSeverity.FATAL, stage)
        logger.error(str(failure))
        result.status = JobStatus.FAILED
        result.failures = list(failures or []) + [failure]
        result.elapsed_s = time.monotonic() - started
        return result

    def _run_pages(self, ctx: _JobContext, pages: List[int]):
        workers = max(1, ctx.config.runtime.page_concurrency)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pdf2word-page") as executor:
            futures = {executor.submit(self._run_page, ctx, n): n for n in pages}
            for future in as_completed(futures):
                future.result()

    def _run_page(self, ctx: _JobContext, page_number: int):
        try:
            ctx.token.raise_if_canceled()
            page_ir = self._process_page(ctx, page_number)
            if page_ir is not None:
                ctx.add_page(page_ir)
        except JobCanceledError:
            logger.info(f"Page {page_number}: canceled")
            return
        except Exception as e:
            logger.exception(f"Page {page_number}: unexpected error")
            ctx.add_failure(FailureInfo(
                ErrorCode.PAGE_FAILED, f"Unexpected error: {e}",
                ErrorSeverity.RECOVERABLE, JobStage.FINALIZE, page_number
            ))

        ctx.mark_page_done()
        ctx.report(page_number, JobStage.FINALIZE, "Page finished")

    def _finish(self, ctx: _JobContext, result: ConvertResult, started: float) -> ConvertResult:
        config = ctx.config
        failures = list(ctx.failures)

        if ctx.token.is_canceled:
            result.cancel_reason = ctx.token.reason
            result.failures = failures
            result.elapsed_s = time.monotonic() - started
            if ctx.token.reason == CANCEL_REASON_FAIL_FAST:
                result.status = JobStatus.FAILED
                logger.error("Job aborted by fail-fast")
            else:
                result.status = JobStatus.CANCELED
                logger.warning("Job canceled by caller")
            return result

        if not ctx.pages:
            return self._fail(result, started, ErrorCode.PAGE_ALL_FAILED,
                              "All pages failed.", JobStage.FINALIZE, failures)

        if not config.validation.allow_skip_failed_pages and len(ctx.pages) < ctx.total_pages:
            return self._fail(result, started, ErrorCode.PAGE_FAILED,
                              "Some pages failed; output aborted.", JobStage.FINALIZE, failures)

        document = DocumentIr(
            meta=DocumentMeta(
                source_path=str(ctx.request.pdf_path),
                options=OptionsSnapshot(
                    dpi=config.render.dpi,
                    page_range=ctx.request.page_range_text or "",
                    header_footer_mode=config.layout.header_footer_mode,
                    header_percent=config.layout.header_percent,
                    footer_percent=config.layout.footer_percent,
                    page_size_mode=config.layout.page_size_mode,
                ),
            ),
            pages=sorted(ctx.pages, key=lambda p: p.page_number),
        )
        result.document = document
        if ctx.keep_files:
            save_json(document, ctx.storage.get_ir_path("doc_ir.json"))

        ctx.report(None, JobStage.DOCX_WRITE, "Writing DOCX")
        writer = self.docx_writer or DocxWriter(config.docx, config.layout, config.render.dpi)
        try:
            writer.write(document, result.output_path)
        except Exception:
            logger.exception("Failed to write DOCX")
            return self._fail(result, started, ErrorCode.DOCX_WRITE_FAILED,
                              "Unable to write the Word file.", JobStage.DOCX_WRITE, failures)

        result.status = (
            JobStatus.FAILED if any(f.severity == ErrorSeverity.FATAL for f in failures)
            else JobStatus.SUCCEEDED
        )
        result.failures = failures
        result.elapsed_s = time.monotonic() - started
        logger.info(
            f"Conversion finished: {result.status}, {len(document.pages)} page(s), "
            f"{len(failures)} failure(s) in {result.elapsed_s:.1f}s"
        )

        if ctx.keep_files and config.diagnostics.export_zip:
            try:
                export_zip(ctx.storage.job_root)
            except Exception as e:
                logger.warning(f"Diagnostics zip export failed: {e}")

        ctx.report(None, JobStage.FINALIZE, "Done")
        return result

    @staticmethod
    def _attach_job_log(storage: Optional[TempStorage]) -> Optional[logging.Handler]:
        if storage is None:
            return None
        handler = logging.FileHandler(storage.get_log_path("job.log"), encoding="utf-8")
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger("pdf2word").addHandler(handler)
        return handler

    @staticmethod
    def _detach_job_log(handler: Optional[logging.Handler]):
        if handler is None:
            return
        logging.getLogger("pdf2word").removeHandler(handler)
        handler.close()

    # ------------------------------------------------------------------------
    # Page level
    # ------------------------------------------------------------------------

    def _process_page(self, ctx: _JobContext, page_number: int) -> Optional[PageIr]:
        config = ctx.config

        ctx.report(page_number, JobStage.PDF_RENDER, "Rendering page")
        try:
            rendered = self.renderer.render_page(ctx.request.pdf_path, page_number - 1, config.render.dpi)
        except Exception as e:
            logger.exception(f"Page {page_number}: render failed")
            ctx.add_failure(FailureInfo(
                ErrorCode.PDF_RENDER_FAILED, f"Page render failed: {e}",
                ErrorSeverity.RECOVERABLE, JobStage.PDF_RENDER, page_number
            ))
            return None

        ctx.token.raise_if_canceled()

        ctx.report(page_number, JobStage.PREPROCESS, "Preprocessing image")
        try:
            bundle = preprocess_page(
                rendered,
                config.preprocess,
                page_number,
                config.layout.header_footer_mode,
                config.layout.header_percent,
                config.layout.footer_percent,
            )
        except Exception as e:
            logger.exception(f"Page {page_number}: preprocessing failed")
            ctx.add_failure(FailureInfo(
                ErrorCode.IMG_PREPROCESS_FAILED, f"Image preprocessing failed: {e}",
                ErrorSeverity.RECOVERABLE, JobStage.PREPROCESS, page_number
            ))
            return None
        finally:
            del rendered

        with bundle:
            if ctx.keep_files:
                storage = ctx.storage
                save_image(bundle.original_color, storage.get_page_image_path(page_number, "original"))
                save_image(bundle.cropped_color, storage.get_page_image_path(page_number, "cropped"))
                save_image(bundle.binary_for_table, storage.get_page_image_path(page_number, "binary"))
            return self._process_bundle(ctx, bundle)

    def _process_bundle(self, ctx: _JobContext, bundle: PageImageBundle) -> Optional[PageIr]:
        config = ctx.config
        page_number = bundle.page_number

        tables: List[TableDetection] = []
        if config.table.enable:
            ctx.report(page_number, JobStage.TABLE_DETECT, "Detecting tables")
            try:
                tables = ctx.table_engine.detect_tables(bundle)
            except Exception as e:
                logger.exception(f"Page {page_number}: table detection failed")
                ctx.add_failure(FailureInfo(
                    ErrorCode.TABLE_DETECT_FAILED, f"Table detection failed: {e}",
                    ErrorSeverity.RECOVERABLE, JobStage.TABLE_DETECT, page_number
                ))
                tables = []

        try:
            if ctx.keep_files:
                for i, table in enumerate(tables):
                    save_image(table.image_color, ctx.storage.get_table_image_path(page_number, i, "color"))

            table_blocks, fallback_paragraphs = self._process_tables(ctx, page_number, tables)

            ctx.token.raise_if_canceled()
            ctx.report(page_number, JobStage.GEMINI_PAGE_OCR, "Recognizing body text")
            masked = ctx.table_engine.mask_tables(bundle.color_for_ocr, [t.bbox for t in tables])
            paragraphs = self._recognize_page_text(ctx, page_number, masked)
        finally:
            for table in tables:
                table.release()

        paragraphs = fallback_paragraphs + paragraphs
        paragraphs = [ParagraphText(clean_text(p.text), p.role) for p in paragraphs]

        ctx.report(page_number, JobStage.ASSEMBLE_IR, "Assembling page")
        page_ir = build_page_ir(
            page_number,
            bundle.original_size,
            bundle.cropped_size,
            bundle.crop_info,
            paragraphs,
            table_blocks,
        )

        all_text = "".join(p.text for p in paragraphs)
        logger.debug(f"Page {page_number}: replacement_char_rate={replacement_char_rate(all_text):.4f}")

        if not page_ir.blocks and config.validation.enable:
            ctx.add_failure(FailureInfo(
                ErrorCode.PAGE_EMPTY, "Page produced no content.",
                ErrorSeverity.RECOVERABLE, JobStage.ASSEMBLE_IR, page_number
            ))
            return None

        if ctx.keep_files:
            save_json(page_ir, ctx.storage.get_ir_path(f"p{page_number:03d}_ir.json"))

        logger.info(f"Page {page_number}: {len(page_ir.blocks)} block(s)")
        return page_ir

    # ------------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------------

    def _process_tables(
        self,
        ctx: _JobContext,
        page_number: int,
        tables: List[TableDetection]
    ) -> Tuple[List[TableBlock], List[ParagraphText]]:
        config = ctx.config
        text_fallback_enabled = config.table.enable_text_table_fallback
        blocks: List[TableBlock] = []
        fallback_paragraphs: List[ParagraphText] = []

        for table_index, table in enumerate(tables):
            ctx.token.raise_if_canceled()
            ctx.report(page_number, JobStage.TABLE_GRID, f"Validating table {table_index}")

            validation = validate_table(build_table_ir(table))
            if not validation.is_valid:
                ctx.add_failure(FailureInfo(
                    validation.error_code or ErrorCode.TABLE_GRID_CONFLICT,
                    validation.message or "Table grid conflict.",
                    ErrorSeverity.RECOVERABLE, JobStage.TABLE_GRID, page_number, table_index
                ))
                if (config.validation.table_structure_bad == TableFallbackPolicy.FALLBACK_TEXT_TABLE
                        and text_fallback_enabled):
                    text = self._recognize_table_lines(ctx, page_number, table_index, table)
                    if text:
                        fallback_paragraphs.append(ParagraphText(text))
                continue

            ctx.report(page_number, JobStage.GEMINI_TABLE_OCR, f"Recognizing table {table_index}")
            outcome = self._recognize_table_cells(ctx, page_number, table_index, table)
            texts = outcome.result or {}

            if (not outcome.accepted
                    and config.validation.table_structure_ok_text_bad == TableFallbackPolicy.FALLBACK_TEXT_TABLE
                    and text_fallback_enabled):
                text = self._recognize_table_lines(ctx, page_number, table_index, table)
                if text:
                    fallback_paragraphs.append(ParagraphText(text))
                    continue

            blocks.append(build_table_ir(table, texts, max(1, outcome.attempt)))

        return blocks, fallback_paragraphs

    def _recognize_table_cells(
        self,
        ctx: _JobContext,
        page_number: int,
        table_index: int,
        table: TableDetection
    ) -> RetryOutcome:
        """OCR every cell; the result is a dict of cleaned text by cell id."""
        cells = [
            CellBoxForOcr(c.cell_id, c.bbox.x, c.bbox.y, c.bbox.w, c.bbox.h)
            for c in table.cells
        ]
        if not cells:
            return RetryOutcome({}, 0, True)

        expected = [c.cell_id for c in cells]
        gemini = ctx.config.gemini

        def evaluate(result):
            texts = result.text_by_id
            missing = sum(1 for cell_id in expected if cell_id not in texts)
            missing_rate = missing / len(expected)
            if missing_rate > gemini.table_missing_id_threshold:
                return ErrorCode.GEMINI_OCR_MISSING_IDS, (
                    f"Table OCR is missing {missing} of {len(expected)} cell(s)"
                )
            empty = sum(1 for cell_id in expected if not (texts.get(cell_id) or "").strip())
            empty_rate = empty / len(expected)
            if empty_rate > gemini.table_empty_text_rate_threshold:
                return ErrorCode.GEMINI_OCR_EMPTY_TEXT, (
                    f"Table OCR returned {empty} blank cell(s) of {len(expected)}"
                )
            return None

        outcome = self._call_with_retries(
            ctx, page_number, table_index, JobStage.GEMINI_TABLE_OCR, "cells",
            lambda strict, attempt: self.ocr_client.recognize_table_cells(
                table.image_color, cells, strict, attempt
            ),
            evaluate,
            "Table OCR failed",
        )
        if outcome.result is not None:
            outcome.result = {
                cell_id: clean_text(text or "")
                for cell_id, text in outcome.result.text_by_id.items()
            }
        return outcome

    def _recognize_table_lines(
        self,
        ctx: _JobContext,
        page_number: int,
        table_index: int,
        table: TableDetection
    ) -> str:
        """OCR a table as plain lines; returns the joined text or ''."""
        def evaluate(result):
            if not any(line.strip() for line in result.lines):
                return ErrorCode.GEMINI_OCR_EMPTY_TEXT, "Table text fallback returned no lines"
            return None

        outcome = self._call_with_retries(
            ctx, page_number, table_index, JobStage.GEMINI_TABLE_OCR, "lines",
            lambda strict, attempt: self.ocr_client.recognize_table_as_lines(table.image_color, attempt),
            evaluate,
            "Table text fallback failed",
        )
        if not outcome.accepted:
            return ""
        return "\n".join(clean_text(line) for line in outcome.result.lines)

    # ------------------------------------------------------------------------
    # Body text
    # ------------------------------------------------------------------------

    def _recognize_page_text(
        self,
        ctx: _JobContext,
        page_number: int,
        image: np.ndarray
    ) -> List[ParagraphText]:
        config = ctx.config
        min_chars = config.gemini.min_page_text_char_count

        def evaluate(result):
            total_chars = sum(len(p.text or "") for p in result.paragraphs)
            if not result.paragraphs or total_chars < min_chars:
                return ErrorCode.GEMINI_OCR_EMPTY_TEXT, (
                    f"Body text OCR returned {len(result.paragraphs)} paragraph(s), "
                    f"{total_chars} character(s)"
                )
            return None

        outcome = self._call_with_retries(
            ctx, page_number, None, JobStage.GEMINI_PAGE_OCR, "paragraphs",
            lambda strict, attempt: self.ocr_client.recognize_page_paragraphs(image, strict, attempt),
            evaluate,
            "Body text OCR failed",
        )
        if outcome.accepted:
            return [ParagraphText(p.text or "", p.role) for p in outcome.result.paragraphs]

        if config.validation.text_empty == TextFallbackPolicy.SINGLE_PARAGRAPH:
            fallback = self._call_with_retries(
                ctx, page_number, None, JobStage.GEMINI_PAGE_OCR, "text",
                lambda strict, attempt: self.ocr_client.recognize_page_as_single_text(image, attempt),
                lambda result: None if (result.text or "").strip() else (
                    ErrorCode.GEMINI_OCR_EMPTY_TEXT, "Whole-page text fallback returned no text"
                ),
                "Whole-page text fallback failed",
            )
            if fallback.accepted:
                return [ParagraphText(fallback.result.text)]

        # Rejected text never reaches the page
        return []

    # ------------------------------------------------------------------------
    # OCR retry loop
    # ------------------------------------------------------------------------

    @contextmanager
    def _ocr_slot(self, ctx: _JobContext):
        """Hold one slot of the job-wide OCR gate, giving up on cancellation."""
        while not ctx.ocr_gate.acquire(timeout=0.1):
            ctx.token.raise_if_canceled()
        try:
            ctx.token.raise_if_canceled()
            yield
        finally:
            ctx.ocr_gate.release()

    def _call_with_retries(
        self,
        ctx: _JobContext,
        page_number: int,
        table_index: Optional[int],
        stage: str,
        kind: str,
        call: Callable[[bool, int], Any],
        evaluate: Callable[[Any], Optional[Tuple[str, str]]],
        fallback_message: str
    ) -> RetryOutcome:
        """
        Run an OCR call with retries.

        Attempt 0 requests lenient JSON, later attempts strict JSON. Every
        rejected attempt is recorded as a failure. Non-retryable transport
        errors end the loop early.

        Args:
            call: ``call(strict_json, attempt_number)`` returning a result
            evaluate: Returns None to accept a result, else (error_code, message)
            fallback_message: Message for unclassified exceptions

        Returns:
            RetryOutcome with the accepted result, or the last parsed one
        """
        gemini = ctx.config.gemini
        max_retry = max(0, gemini.max_retry_count)
        outcome = RetryOutcome()

        for attempt in range(max_retry + 1):
            if attempt > 0:
                delay_ms = backoff_delay_ms(gemini.backoff_base_ms, attempt - 1)
                if delay_ms > 0 and ctx.token.wait(delay_ms / 1000.0):
                    ctx.token.raise_if_canceled()
            ctx.token.raise_if_canceled()

            attempt_number = attempt + 1
            try:
                with self._ocr_slot(ctx):
                    result = call(attempt > 0, attempt_number)
            except JobCanceledError:
                raise
            except Exception as e:
                info = map_gemini_error(e, fallback_message)
                logger.debug(f"Page {page_number}: {kind} OCR attempt {attempt_number} raised", exc_info=True)
                ctx.add_failure(FailureInfo(
                    info.code, f"{info.message} ({e})", ErrorSeverity.RECOVERABLE,
                    stage, page_number, table_index, attempt_number
                ))
                if not info.retryable:
                    break
                continue

            self._save_raw_response(ctx, page_number, table_index, kind, attempt_number, result)
            outcome.result = result
            outcome.attempt = attempt_number

            rejection = evaluate(result)
            if rejection is None:
                outcome.accepted = True
                return outcome

            code, message = rejection
            ctx.add_failure(FailureInfo(
                code, message, ErrorSeverity.RECOVERABLE,
                stage, page_number, table_index, attempt_number
            ))

        return outcome

    @staticmethod
    def _save_raw_response(
        ctx: _JobContext,
        page_number: int,
        table_index: Optional[int],
        kind: str,
        attempt: int,
        result: Any
    ):
        if not ctx.keep_files or not ctx.config.diagnostics.save_raw_ocr_json:
            return
        table_part = f"_t{table_index:02d}" if table_index is not None else ""
        name = f"p{page_number:03d}{table_part}_{kind}_a{attempt}.json"
        try:
            save_text(getattr(result, "raw_json", ""), ctx.storage.get_ir_path(name))
        except OSError as e:
            logger.warning(f"Could not save raw OCR response {name}: {e}")
