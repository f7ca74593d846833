from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from omegaconf import DictConfig

from .configuration import configure_logging, get_settings
from .database import ProofDatabase
from .errors import (
    AnalysisError,
    FileValidationError,
    NotFoundError,
    ProofReviewError,
    TransitionRejected,
    TransportError,
    UploadCancelled,
)
from .lifecycle import approval_summary, order_proof_status, review_action, send_action_label
from .models import (
    CutContourAnalysis,
    Order,
    OrderCreate,
    OrderDetail,
    OrderItemCreate,
    Proof,
    ProofFileInput,
    ProofInput,
    ProofNotesUpdate,
    ProofStatus,
    ProofStatusUpdate,
    ProofView,
    SizeCheck,
    UploadDetail,
    UploadSummary,
)
from .object_store import build_object_store, display_url_for, preview_url, thumbnail_url
from .pdf_analysis import PrintFileAnalyzer
from .proof_store import ProofStore
from .upload_pipeline import UploadPipeline
from .validation import is_pdf

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(title="Proof Review API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

proof_store = ProofStore(
    ProofDatabase(Path(settings.database.path)),
    max_proofs_per_order=int(settings.uploads.max_proofs_per_order),
)
analyzer = PrintFileAnalyzer.from_config(settings)
upload_pipeline = UploadPipeline.from_config(settings, proof_store, build_object_store(settings), analyzer)

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    FileValidationError: 400,
    TransitionRejected: 409,
    UploadCancelled: 409,
    AnalysisError: 422,
    TransportError: 502,
}


@app.exception_handler(ProofReviewError)
async def handle_proof_review_error(request: Request, exc: ProofReviewError) -> JSONResponse:
    status_code = next((code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


def get_settings_dependency() -> DictConfig:
    return settings


def get_proof_store() -> ProofStore:
    return proof_store


def get_upload_pipeline() -> UploadPipeline:
    return upload_pipeline


def get_analyzer() -> PrintFileAnalyzer:
    return analyzer


def _proof_view(proof: Proof) -> ProofView:
    customer_file_display_url = None
    if proof.customer_file_url:
        customer_file_display_url = display_url_for(proof.customer_file_url, proof.original_file_name or proof.customer_file_url)
    return ProofView(
        **proof.model_dump(),
        display_url=display_url_for(proof.file_url, proof.title),
        thumbnail_url=thumbnail_url(proof.file_url),
        preview_url=preview_url(proof.file_url),
        customer_file_display_url=customer_file_display_url,
    )


def _order_detail(order: Order, pipeline: UploadPipeline) -> OrderDetail:
    return OrderDetail(
        **order.model_dump(exclude={"proofs"}),
        proofs=[_proof_view(proof) for proof in order.proofs],
        proof_status=order_proof_status(order.proofs),
        approval=approval_summary(order.proofs),
        review_action=review_action(order.proofs, pipeline.local_pending(order.id)),
        send_action_label=send_action_label(order.proofs),
    )


def _parse_cut_lines(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


# Orders


@app.post("/orders", response_model=OrderDetail, status_code=201)
def create_order(
    payload: OrderCreate,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.create_order(payload), pipeline)


@app.post("/orders/{order_id}/items", response_model=OrderDetail, status_code=201)
def add_order_item(
    order_id: str,
    payload: OrderItemCreate,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.add_order_item(order_id, payload), pipeline)


@app.get("/orders/{order_id}", response_model=OrderDetail)
def get_order(
    order_id: str,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.get_proofs_for_order(order_id), pipeline)


@app.get("/orders/{order_id}/items/{item_id}/size-check", response_model=SizeCheck)
def size_check(
    order_id: str,
    item_id: str,
    store: ProofStore = Depends(get_proof_store),
    config: DictConfig = Depends(get_settings_dependency),
) -> SizeCheck:
    return store.size_check(order_id, item_id, tolerance=float(config.review.size_tolerance_inches))


# Proofs (admin)


@app.post("/orders/{order_id}/proofs", response_model=OrderDetail, status_code=201)
def add_proof(
    order_id: str,
    payload: ProofInput,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.add_proof(order_id, payload), pipeline)


@app.post("/orders/{order_id}/proofs/send", response_model=OrderDetail)
def send_proofs(
    order_id: str,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.send_proofs(order_id), pipeline)


@app.put("/orders/{order_id}/proofs/{proof_id}/file", response_model=OrderDetail)
def replace_proof_file(
    order_id: str,
    proof_id: str,
    payload: ProofFileInput,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.replace_proof_file(order_id, proof_id, payload), pipeline)


@app.delete("/orders/{order_id}/proofs/{proof_id}", response_model=OrderDetail)
def remove_proof(
    order_id: str,
    proof_id: str,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    return _order_detail(store.remove_proof(order_id, proof_id), pipeline)


@app.patch("/orders/{order_id}/proofs/{proof_id}/notes", response_model=OrderDetail)
def add_proof_notes(
    order_id: str,
    proof_id: str,
    payload: ProofNotesUpdate,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    order = store.add_proof_notes(order_id, proof_id, payload.admin_notes, payload.customer_notes)
    return _order_detail(order, pipeline)


# Proofs (customer)


@app.post("/orders/{order_id}/proofs/{proof_id}/status", response_model=OrderDetail)
def update_proof_status(
    order_id: str,
    proof_id: str,
    payload: ProofStatusUpdate,
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    order = store.update_proof_status(order_id, proof_id, payload.status, payload.customer_notes)
    return _order_detail(order, pipeline)


@app.post("/orders/{order_id}/proofs/{proof_id}/request-changes", response_model=OrderDetail)
async def request_changes(
    order_id: str,
    proof_id: str,
    notes: str = Form(""),
    file: Optional[UploadFile] = File(None),
    store: ProofStore = Depends(get_proof_store),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> OrderDetail:
    if file is not None and file.filename:
        data = await file.read()
        await file.close()
        order = await run_in_threadpool(
            pipeline.upload_customer_revision,
            order_id,
            proof_id,
            file.filename,
            data,
            file.content_type,
            notes or None,
        )
    else:
        order = await run_in_threadpool(
            store.update_proof_status, order_id, proof_id, ProofStatus.CHANGES_REQUESTED, notes or None
        )
    return _order_detail(order, pipeline)


# Uploads


@app.post("/orders/{order_id}/uploads", response_model=list[UploadSummary], status_code=202)
async def submit_uploads(
    order_id: str,
    files: List[UploadFile] = File(...),
    cut_lines: str = Form(""),
    order_item_id: Optional[str] = Form(None),
    replace_proof_id: Optional[str] = Form(None),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> list[UploadSummary]:
    batch = []
    for upload in files:
        batch.append((upload.filename or "", await upload.read(), upload.content_type))
        await upload.close()
    return await run_in_threadpool(
        pipeline.submit,
        order_id,
        batch,
        cut_lines=_parse_cut_lines(cut_lines),
        order_item_id=order_item_id or None,
        replace_proof_id=replace_proof_id or None,
    )


@app.get("/orders/{order_id}/uploads", response_model=list[UploadSummary])
def list_uploads(order_id: str, pipeline: UploadPipeline = Depends(get_upload_pipeline)) -> list[UploadSummary]:
    return pipeline.list_uploads(order_id)


@app.get("/uploads/{upload_id}", response_model=UploadDetail)
def get_upload(upload_id: str, pipeline: UploadPipeline = Depends(get_upload_pipeline)) -> UploadDetail:
    upload = pipeline.get_upload(upload_id)
    if not upload:
        raise HTTPException(status_code=404, detail="Upload not found")
    return upload


@app.post("/uploads/{upload_id}/cancel")
def cancel_upload(upload_id: str, pipeline: UploadPipeline = Depends(get_upload_pipeline)) -> Dict[str, bool]:
    if pipeline.get_upload(upload_id) is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return {"cancelled": pipeline.cancel(upload_id)}


@app.post("/uploads/{upload_id}/retry", response_model=UploadSummary)
def retry_upload(upload_id: str, pipeline: UploadPipeline = Depends(get_upload_pipeline)) -> UploadSummary:
    summary = pipeline.retry(upload_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return summary


# Analysis


@app.post("/analysis/pdf", response_model=CutContourAnalysis)
async def analyze_pdf_upload(
    file: UploadFile = File(...),
    pdf_analyzer: PrintFileAnalyzer = Depends(get_analyzer),
) -> CutContourAnalysis:
    if not file.filename:
        raise HTTPException(status_code=400, detail="File must have a filename")
    if not is_pdf(file.filename, file.content_type):
        raise HTTPException(status_code=400, detail="Only PDF files can be analyzed")
    data = await file.read()
    await file.close()
    return await run_in_threadpool(pdf_analyzer.analyze, data, file.filename)
