"""
Pytest configuration and fixtures for Proof Review Backend tests.
"""

import os
import shutil
import tempfile
import threading
import time
from pathlib import Path

import fitz  # PyMuPDF
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_DATA_DIR = tempfile.mkdtemp(prefix="proof_review_test_")
os.environ["PROOF_REVIEW_DB_PATH"] = str(Path(TEST_DATA_DIR) / "proofs.db")
os.environ["PROOF_REVIEW_LOG_LEVEL"] = "WARNING"

from proof_review_backend.database import ProofDatabase
from proof_review_backend.errors import TransportError
from proof_review_backend.main import app, get_proof_store, get_upload_pipeline
from proof_review_backend.models import OrderCreate, OrderItemCreate, ProofInput, StoredObject
from proof_review_backend.object_store import ObjectStoreClient, ProgressTracker
from proof_review_backend.proof_store import ProofStore
from proof_review_backend.upload_pipeline import UploadPipeline
from proof_review_backend.utils import split_extension

POINTS_PER_INCH = 72


class FakeObjectStore(ObjectStoreClient):
    """
    In-memory object store.

    ``fail_names`` makes uploads of those filenames raise TransportError,
    ``gate`` (when set up with ``hold()``) blocks uploads until ``release()``
    while still honouring cancellation.
    """

    def __init__(self):
        self.uploads = []
        self.fail_names = set()
        self._gate = threading.Event()
        self._gate.set()
        self.started = threading.Event()
        self._lock = threading.Lock()

    def hold(self):
        self._gate.clear()

    def release(self):
        self._gate.set()

    def upload(self, data, filename, content_type=None, metadata=None, on_progress=None, cancel_token=None, folder=None):
        tracker = ProgressTracker(len(data), on_progress, cancel_token)
        tracker.advance(len(data) // 2)
        self.started.set()
        while not self._gate.wait(0.01):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
        if filename in self.fail_names:
            raise TransportError(f"Upload failed with status 500: {filename}", status_code=500)
        tracker.advance(len(data))
        tracker.finish()
        stem, extension = split_extension(filename)
        with self._lock:
            public_id = f"{folder or 'root'}/{stem}-{len(self.uploads)}"
            self.uploads.append({"filename": filename, "folder": folder, "metadata": dict(metadata or {})})
        return StoredObject(
            public_id=public_id,
            url=f"https://res.cloudinary.com/demo/image/upload/v1/{public_id}.{extension}",
            bytes=len(data),
            format=extension,
            original_filename=stem,
        )


def wait_for(predicate, timeout=5.0):
    """Poll until ``predicate()`` is truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def build_pdf(
    width_in=4.0,
    height_in=6.0,
    margin_in=0.5,
    layer_name=None,
    draw_contour=True,
):
    """
    Build a one-page PDF with an optional stroked cut line.

    The page is the contour size plus ``margin_in`` on every side; the contour
    is drawn on an optional content group named ``layer_name`` when given.
    """
    document = fitz.open()
    page = document.new_page(
        width=(width_in + 2 * margin_in) * POINTS_PER_INCH,
        height=(height_in + 2 * margin_in) * POINTS_PER_INCH,
    )
    if draw_contour:
        rect = fitz.Rect(
            margin_in * POINTS_PER_INCH,
            margin_in * POINTS_PER_INCH,
            (margin_in + width_in) * POINTS_PER_INCH,
            (margin_in + height_in) * POINTS_PER_INCH,
        )
        oc = document.add_ocg(layer_name, on=True) if layer_name else 0
        page.draw_rect(rect, color=(0.57, 0.78, 0.28), width=0.25, oc=oc)
    data = document.tobytes()
    document.close()
    return data


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the test data directory after all tests."""
    yield TEST_DATA_DIR
    shutil.rmtree(TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def db(tmp_path):
    return ProofDatabase(tmp_path / "proofs.db")


@pytest.fixture
def store(db):
    return ProofStore(db)


@pytest.fixture
def object_store():
    fake = FakeObjectStore()
    yield fake
    fake.release()


@pytest.fixture
def pipeline(store, object_store):
    upload_pipeline = UploadPipeline(store, object_store, max_workers=4)
    yield upload_pipeline
    object_store.release()
    upload_pipeline.shutdown(wait=True)


@pytest.fixture
def order(store):
    """An order with one 4" x 6" sticker item."""
    store.create_order(OrderCreate(id="order-1", order_number="SO-1001"))
    return store.add_order_item(
        "order-1",
        OrderItemCreate(id="item-1", product_name="Die Cut Stickers", quantity=50, calculator_selections={"size": '4" x 6"'}),
    )


@pytest.fixture
def proof_input():
    def make(title="front.png", **kwargs):
        return ProofInput(
            file_url=f"https://res.cloudinary.com/demo/image/upload/f_auto,q_auto/v1/proofs/{title}",
            file_public_id=f"proofs/{title}",
            title=title,
            cut_lines=["green"],
            **kwargs,
        )

    return make


@pytest.fixture
def client(store, pipeline):
    """Create a test client for the FastAPI app backed by the per-test store and fake object store."""
    app.dependency_overrides[get_proof_store] = lambda: store
    app.dependency_overrides[get_upload_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def contour_pdf():
    """A 4" x 6" cut line on a layer named CutContour."""
    return build_pdf(layer_name="CutContour")


@pytest.fixture
def plain_pdf():
    """A PDF with no layers, no spot colours and no drawings."""
    return build_pdf(draw_contour=False)
