"""
PDF to Word Conversion Pipeline
===============================

Converts scanned PDFs into editable Word documents with reconstructed tables.

Main components:
- Page range selection
- Image preprocessing (crop, contrast, denoise, binarize, deskew)
- Table structure detection and grid validation
- OCR of table cells and body text through Gemini, with retries and fallbacks
- Versioned intermediate representation (IR) of every page
- DOCX export with page geometry, section breaks and merged cells
"""

__version__ = "1.0.0"
__author__ = "Pdf2Word Team"
