#!/usr/bin/env python
"""
Command-line interface for the PDF to Word converter.

Usage:
    pdf2word --input <pdf> [--output <docx>] [options]

Examples:
    # Convert a scanned PDF next to the source file
    pdf2word --input scan.pdf

    # Convert pages 1-3 and 5 onto A4 pages, keeping diagnostics
    pdf2word --input scan.pdf --pages "1-3,5" --page-size a4 --keep-temp

    # Re-render a saved IR without OCR
    pdf2word --from-ir doc_ir.json --output rebuilt.docx
"""

import argparse
import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .config import (
    get_config, PipelineConfig, HeaderFooterMode, PageSizeMode, JobStatus
)

logger = logging.getLogger("pdf2word")


def setup_argparser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="PDF to Word - convert scanned PDFs into editable DOCX with reconstructed tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Convert a whole document:
    pdf2word --input scan.pdf --output scan.docx

  Convert selected pages, removing headers and footers:
    pdf2word --input scan.pdf --pages "2-4,7" --header-footer both

  Re-render a saved IR:
    pdf2word --from-ir doc_ir.json --output rebuilt.docx
        """
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--input", "-i",
        help="Input PDF file"
    )
    source.add_argument(
        "--from-ir",
        help="Render a saved document IR JSON instead of converting a PDF"
    )

    parser.add_argument(
        "--output", "-o",
        default=None,
        help="Output DOCX path (default: <pdf name>_converted.docx next to the PDF)"
    )

    parser.add_argument(
        "--pages",
        type=str,
        default="",
        help="Page range, e.g. '1-5' or '1,3,5' (default: all)"
    )

    parser.add_argument(
        "--dpi",
        type=int,
        default=None,
        help="Rendering DPI (default: 300)"
    )

    parser.add_argument(
        "--header-footer",
        choices=[HeaderFooterMode.NONE, HeaderFooterMode.REMOVE_HEADER,
                 HeaderFooterMode.REMOVE_FOOTER, HeaderFooterMode.REMOVE_BOTH],
        default=None,
        help="Crop the page header and/or footer (default: none)"
    )

    parser.add_argument(
        "--header-pct",
        type=float,
        default=None,
        help="Header band as a fraction of the page height (default: 0.06)"
    )

    parser.add_argument(
        "--footer-pct",
        type=float,
        default=None,
        help="Footer band as a fraction of the page height (default: 0.06)"
    )

    parser.add_argument(
        "--page-size",
        choices=["follow", "a4"],
        default=None,
        help="Output page size: follow the PDF pages or fixed A4 (default: follow)"
    )

    parser.add_argument(
        "--page-concurrency",
        type=int,
        default=None,
        help="Pages processed at the same time (default: 2)"
    )

    parser.add_argument(
        "--ocr-concurrency",
        type=int,
        default=None,
        help="OCR requests in flight across all pages (default: 2)"
    )

    parser.add_argument(
        "--max-retry",
        type=int,
        default=None,
        help="Retries per OCR call (default: 1)"
    )

    parser.add_argument(
        "--api-key",
        default=None,
        help="Gemini API key (default: $GEMINI_API_KEY)"
    )

    parser.add_argument(
        "--model",
        default=None,
        help="Gemini model name"
    )

    parser.add_argument(
        "--no-deskew",
        action="store_true",
        help="Disable skew correction"
    )

    parser.add_argument(
        "--no-tables",
        action="store_true",
        help="Disable table detection"
    )

    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Abort the job on the first failure"
    )

    parser.add_argument(
        "--no-skip-failed",
        action="store_true",
        help="Fail the job instead of skipping failed pages"
    )

    parser.add_argument(
        "--keep-temp",
        action="store_true",
        help="Keep intermediate images, IR JSON and the job log"
    )

    parser.add_argument(
        "--save-raw-json",
        action="store_true",
        help="Also keep raw OCR responses (implies --keep-temp)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-error output"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    return parser


def build_config(args) -> PipelineConfig:
    """Apply command-line options on top of the environment defaults."""
    config = get_config()

    render = config.render
    if args.dpi is not None:
        render = replace(render, dpi=args.dpi)

    layout = config.layout
    if args.header_footer is not None:
        layout = replace(layout, header_footer_mode=args.header_footer)
    if args.header_pct is not None:
        layout = replace(layout, header_percent=args.header_pct)
    if args.footer_pct is not None:
        layout = replace(layout, footer_percent=args.footer_pct)
    if args.page_size is not None:
        layout = replace(
            layout,
            page_size_mode=PageSizeMode.A4 if args.page_size == "a4" else PageSizeMode.FOLLOW_PDF
        )

    runtime = config.runtime
    if args.page_concurrency is not None:
        runtime = replace(runtime, page_concurrency=args.page_concurrency)
    if args.ocr_concurrency is not None:
        runtime = replace(runtime, ocr_concurrency=args.ocr_concurrency)

    gemini = config.gemini
    if args.max_retry is not None:
        gemini = replace(gemini, max_retry_count=args.max_retry)
    if args.api_key:
        gemini = replace(gemini, api_key=args.api_key)
    if args.model:
        gemini = replace(gemini, model=args.model)

    preprocess = config.preprocess
    if args.no_deskew:
        preprocess = replace(preprocess, enable_deskew=False)

    table = config.table
    if args.no_tables:
        table = replace(table, enable=False)

    validation = config.validation
    if args.fail_fast:
        validation = replace(validation, fail_fast=True)
    if args.no_skip_failed:
        validation = replace(validation, allow_skip_failed_pages=False)

    diagnostics = config.diagnostics
    if args.keep_temp or args.save_raw_json:
        diagnostics = replace(diagnostics, keep_temp_files=True)
    if args.save_raw_json:
        diagnostics = replace(diagnostics, save_raw_ocr_json=True)

    return replace(
        config,
        render=render,
        layout=layout,
        runtime=runtime,
        gemini=gemini,
        preprocess=preprocess,
        table=table,
        validation=validation,
        diagnostics=diagnostics,
    )


def check_dependencies() -> bool:
    """Check if required dependencies are available."""
    missing = []

    try:
        import cv2  # noqa: F401
    except ImportError:
        missing.append("opencv-python")

    try:
        import docx  # noqa: F401
    except ImportError:
        missing.append("python-docx")

    try:
        import pdf2image  # noqa: F401
    except ImportError:
        missing.append("pdf2image (and the poppler system package)")

    if missing:
        logger.error("Missing required dependencies:")
        for dep in missing:
            logger.error(f"  - {dep}")
        logger.error("\nInstall with: pip install -e .")
        return False

    return True


def render_from_ir(args, config: PipelineConfig) -> int:
    """Write a DOCX from a saved IR JSON file."""
    from .utils.io import load_json
    from .utils.ir import DocumentIr
    from .utils.export import DocxWriter

    ir_path = Path(args.from_ir)
    document = DocumentIr.from_dict(load_json(ir_path))
    output_path = Path(args.output) if args.output else ir_path.with_suffix(".docx")

    layout = config.layout
    if args.page_size is None:
        layout = replace(layout, page_size_mode=document.meta.options.page_size_mode)

    writer = DocxWriter(config.docx, layout, args.dpi or document.meta.options.dpi)
    writer.write(document, output_path)

    if not args.quiet:
        print(f"Rendered {len(document.pages)} page(s) from {ir_path} to {output_path}")
    return 0


def run_pipeline(args, config: PipelineConfig) -> int:
    """Run a conversion job, canceling it on Ctrl-C."""
    from .pipeline import ConversionService, ConvertJobRequest, CancellationToken
    from .utils.io import Pdf2ImageRenderer
    from .utils.ocr_gemini import GeminiClient

    if not config.gemini.api_key:
        logger.warning("No Gemini API key set (--api-key or GEMINI_API_KEY); OCR calls will fail")

    service = ConversionService(
        renderer=Pdf2ImageRenderer(grayscale=config.render.color_mode == "grayscale"),
        ocr_client=GeminiClient(config.gemini),
    )
    request = ConvertJobRequest(
        pdf_path=args.input,
        output_path=args.output,
        page_range_text=args.pages,
        config=config,
    )

    def on_progress(progress):
        logger.debug(
            f"[{progress.completed_pages}/{progress.total_pages}] "
            f"page {progress.current_page}: {progress.stage} {progress.message}"
        )

    token = CancellationToken()
    outcome = {}
    worker = threading.Thread(
        target=lambda: outcome.update(result=service.convert(request, on_progress, token)),
        name="pdf2word-job",
        daemon=True
    )
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        logger.info("Interrupted by user, canceling job")
        token.cancel()
        worker.join()
        return 130

    result = outcome.get("result")
    if result is None:
        logger.error("Conversion ended without a result")
        return 1

    for failure in result.failures:
        logger.info(f"Failure: {failure}")

    if not args.quiet:
        print("\n" + "=" * 60)
        print("PDF TO WORD CONVERSION " + result.status.upper())
        print("=" * 60)
        print(f"Source: {args.input}")
        print(f"Output: {result.output_path}")
        if result.document is not None:
            print(f"Pages converted: {len(result.document.pages)}")
        print(f"Processing time: {result.elapsed_s:.2f}s")
        print(f"Failures: {len(result.failures)}")
        for failure in result.failures[:10]:
            print(f"  {failure}")
        if len(result.failures) > 10:
            print(f"  ... and {len(result.failures) - 10} more")
        print("=" * 60)

    if result.status == JobStatus.CANCELED:
        return 130
    return 0 if result.status == JobStatus.SUCCEEDED else 1


def main(argv: Optional[list] = None):
    """Main entry point."""
    parser = setup_argparser()
    args = parser.parse_args(argv)

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.ERROR)

    if not check_dependencies():
        sys.exit(1)

    config = build_config(args)
    try:
        if args.from_ir:
            exit_code = render_from_ir(args, config)
        else:
            exit_code = run_pipeline(args, config)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.verbose:
            raise
        sys.exit(1)


if __name__ == "__main__":
    main()
