"""
Proof Review Backend - REST API for print proof review and approval

This package provides a FastAPI-based web service for the proof step of a
print-on-demand order. It enables:

- Validating and uploading proof artwork to a remote media store
- Detecting the cut contour in print-ready PDFs and measuring it in inches
- Tracking each proof through pending, sent, approved and changes requested
- Gating production on every proof of an order being approved

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - upload_pipeline: Concurrent per-file upload orchestration
    - proof_store: Proof operations and per-order invariants
    - lifecycle: Status transitions and order-level aggregation
    - pdf_analysis: Cut contour detection (PyMuPDF)
    - object_store: Media API and S3 upload clients
    - validation: File size and type checks
    - database: SQLite persistence
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn proof_review_backend.main:app --reload --host 0.0.0.0 --port 8000

    Or use the development script:
        uv run uvicorn proof_review_backend.main:app --reload
"""
