"""
Tests for Proof Review Backend API endpoints.

Tests cover:
- Health check
- Order registration and detail (status, approval summary, review action)
- Proof management (add, replace, remove, notes)
- Sending and customer decisions
- Upload submission, status, cancel and retry
- PDF analysis
- Error mapping
"""

from conftest import build_pdf


def create_order(client, order_id="order-api"):
    response = client.post("/orders", json={"id": order_id, "order_number": "SO-2001"})
    assert response.status_code == 201
    response = client.post(
        f"/orders/{order_id}/items",
        json={"id": "item-a", "product_name": "Die Cut Stickers", "quantity": 100, "calculator_selections": {"size": '3" x 3"'}},
    )
    assert response.status_code == 201
    return response.json()


def add_proof(client, order_id="order-api", title="front.png", **extra):
    payload = {
        "file_url": f"https://res.cloudinary.com/demo/image/upload/f_auto,q_auto/v1/proofs/{title}",
        "file_public_id": f"proofs/{title}",
        "title": title,
        "cut_lines": ["green"],
        **extra,
    }
    response = client.post(f"/orders/{order_id}/proofs", json=payload)
    assert response.status_code == 201
    return response.json()


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestOrders:
    """Tests for the /orders endpoints."""

    def test_new_order_detail(self, client):
        data = create_order(client)
        assert data["proof_status"] == "none"
        assert data["review_action"] == "none"
        assert data["approval"] == {"approved": 0, "total": 0, "ready_for_production": False}
        assert data["items"][0]["calculator_selections"] == {"size": '3" x 3"'}

    def test_unknown_order_returns_404(self, client):
        response = client.get("/orders/does-not-exist")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_duplicate_order_returns_409(self, client):
        create_order(client)
        response = client.post("/orders", json={"id": "order-api"})
        assert response.status_code == 409


class TestProofWorkflow:
    """Tests for the admin and customer proof endpoints."""

    def test_full_approval_flow(self, client):
        create_order(client)
        data = add_proof(client, title="a.png")
        data = add_proof(client, title="b.png")
        assert data["review_action"] == "send"
        assert data["send_action_label"] == "Send Proofs"

        response = client.post("/orders/order-api/proofs/send")
        assert response.status_code == 200
        data = response.json()
        assert data["proof_status"] == "awaiting_approval"
        assert data["review_action"] == "view"

        first, second = (proof["id"] for proof in data["proofs"])
        response = client.post(f"/orders/order-api/proofs/{first}/status", json={"status": "approved"})
        assert response.json()["approval"] == {"approved": 1, "total": 2, "ready_for_production": False}

        response = client.post(f"/orders/order-api/proofs/{second}/status", json={"status": "approved"})
        data = response.json()
        assert data["approval"]["ready_for_production"]
        assert data["proof_status"] == "approved"

    def test_proofs_carry_display_urls(self, client):
        create_order(client)
        data = add_proof(client, title="logo.ai")
        proof = data["proofs"][0]
        assert "/upload/w_400,h_300,c_limit,f_auto,q_auto/" in proof["display_url"]
        assert "/upload/w_150,h_150,c_fill,f_auto,q_auto/" in proof["thumbnail_url"]
        assert "/upload/w_800,h_600,c_limit,f_auto,q_auto/" in proof["preview_url"]
        assert proof["customer_file_display_url"] is None

    def test_approve_before_send_returns_409(self, client):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]
        response = client.post(f"/orders/order-api/proofs/{proof_id}/status", json={"status": "approved"})
        assert response.status_code == 409

    def test_customer_cannot_set_sent(self, client):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]
        response = client.post(f"/orders/order-api/proofs/{proof_id}/status", json={"status": "sent"})
        assert response.status_code == 409

    def test_request_changes_with_notes_then_resend(self, client):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]
        client.post("/orders/order-api/proofs/send")

        response = client.post(f"/orders/order-api/proofs/{proof_id}/request-changes", data={"notes": "Make the text larger"})
        assert response.status_code == 200
        data = response.json()
        assert data["proofs"][0]["status"] == "changes_requested"
        assert data["proofs"][0]["customer_notes"] == "Make the text larger"
        assert data["send_action_label"] == "Re-Send"

        response = client.put(
            f"/orders/order-api/proofs/{proof_id}/file",
            json={"file_url": "https://example.test/v2.png", "file_public_id": "proofs/v2", "title": "v2.png"},
        )
        proof = response.json()["proofs"][0]
        assert proof["status"] == "pending"
        assert proof["replaced"]

        data = client.post("/orders/order-api/proofs/send").json()
        assert data["proofs"][0]["status"] == "sent"

    def test_request_changes_without_feedback_returns_409(self, client):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]
        client.post("/orders/order-api/proofs/send")
        response = client.post(f"/orders/order-api/proofs/{proof_id}/request-changes", data={"notes": ""})
        assert response.status_code == 409

    def test_request_changes_with_file(self, client, object_store):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]
        client.post("/orders/order-api/proofs/send")

        response = client.post(
            f"/orders/order-api/proofs/{proof_id}/request-changes",
            data={"notes": ""},
            files={"file": ("new-art.svg", b"<svg></svg>", "image/svg+xml")},
        )
        assert response.status_code == 200
        proof = response.json()["proofs"][0]
        assert proof["status"] == "changes_requested"
        assert proof["original_file_name"] == "new-art.svg"
        assert object_store.uploads[-1]["folder"] == "customer-files"
        assert "/upload/f_auto,q_auto/" in proof["customer_file_display_url"]

    def test_invalid_revision_file_returns_400(self, client):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]
        client.post("/orders/order-api/proofs/send")
        response = client.post(
            f"/orders/order-api/proofs/{proof_id}/request-changes",
            files={"file": ("notes.txt", b"plain text", "text/plain")},
        )
        assert response.status_code == 400

    def test_notes_and_remove(self, client):
        create_order(client)
        proof_id = add_proof(client)["proofs"][0]["id"]

        response = client.patch(f"/orders/order-api/proofs/{proof_id}/notes", json={"admin_notes": "Bleed added"})
        assert response.json()["proofs"][0]["admin_notes"] == "Bleed added"

        response = client.delete(f"/orders/order-api/proofs/{proof_id}")
        assert response.status_code == 200
        assert response.json()["proofs"] == []

        response = client.delete(f"/orders/order-api/proofs/{proof_id}")
        assert response.status_code == 404

    def test_send_without_proofs_returns_409(self, client):
        create_order(client)
        response = client.post("/orders/order-api/proofs/send")
        assert response.status_code == 409

    def test_size_check(self, client):
        create_order(client)
        add_proof(client, title="cut.pdf", order_item_id="item-a", extracted_dimensions={"width": 4.0, "height": 6.0})
        response = client.get("/orders/order-api/items/item-a/size-check")
        assert response.status_code == 200
        data = response.json()
        assert not data["matches"]
        assert data["message"].startswith("size mismatch")


class TestUploads:
    """Tests for the /uploads endpoints."""

    def test_submit_and_poll(self, client, pipeline):
        create_order(client)
        response = client.post(
            "/orders/order-api/uploads",
            files=[
                ("files", ("front.png", b"\x89PNG" + b"0" * 512, "image/png")),
                ("files", ("sticker.pdf", build_pdf(width_in=3, height_in=3, layer_name="CutContour"), "application/pdf")),
            ],
            data={"cut_lines": "green, grey"},
        )
        assert response.status_code == 202
        summaries = response.json()
        assert [summary["filename"] for summary in summaries] == ["front.png", "sticker.pdf"]

        pipeline.wait([summary["id"] for summary in summaries])

        for summary in summaries:
            detail = client.get(f"/uploads/{summary['id']}").json()
            assert detail["state"] == "completed"
            assert detail["events"]

        order = client.get("/orders/order-api").json()
        assert len(order["proofs"]) == 2
        assert order["proofs"][0]["cut_lines"] == ["green", "grey"]

    def test_pdf_upload_feeds_size_check(self, client, pipeline):
        create_order(client)
        [summary] = client.post(
            "/orders/order-api/uploads",
            files=[("files", ("sticker.pdf", build_pdf(width_in=3, height_in=3, layer_name="CutContour"), "application/pdf"))],
            data={"order_item_id": "item-a"},
        ).json()
        [outcome] = pipeline.wait([summary["id"]])
        assert outcome.state == "completed"

        size = client.get("/orders/order-api/items/item-a/size-check").json()
        assert size["matches"]

    def test_invalid_file_reported_per_file(self, client, pipeline):
        create_order(client)
        response = client.post(
            "/orders/order-api/uploads",
            files=[("files", ("readme.txt", b"hello", "text/plain"))],
        )
        [summary] = response.json()
        assert summary["state"] == "invalid"
        [outcome] = pipeline.wait([summary["id"]])
        assert outcome.state == "invalid"
        assert client.post(f"/uploads/{summary['id']}/retry").status_code == 409

    def test_cancel_completed_upload_is_noop(self, client, pipeline):
        create_order(client)
        [summary] = client.post(
            "/orders/order-api/uploads", files=[("files", ("front.png", b"0" * 64, "image/png"))]
        ).json()
        pipeline.wait([summary["id"]])
        response = client.post(f"/uploads/{summary['id']}/cancel")
        assert response.status_code == 200
        assert response.json() == {"cancelled": False}

    def test_unknown_upload(self, client):
        assert client.get("/uploads/nope").status_code == 404
        assert client.post("/uploads/nope/cancel").status_code == 404
        assert client.post("/uploads/nope/retry").status_code == 404

    def test_upload_to_unknown_order(self, client):
        response = client.post("/orders/nope/uploads", files=[("files", ("front.png", b"0" * 64, "image/png"))])
        assert response.status_code == 404


class TestAnalysis:
    """Tests for the /analysis/pdf endpoint."""

    def test_analyze_pdf(self, client, contour_pdf):
        response = client.post("/analysis/pdf", files={"file": ("sticker.pdf", contour_pdf, "application/pdf")})
        assert response.status_code == 200
        data = response.json()
        assert data["has_cut_contour"]
        assert data["detected_by"] == "layer"

    def test_unreadable_pdf_returns_422(self, client):
        response = client.post("/analysis/pdf", files={"file": ("broken.pdf", b"not a pdf", "application/pdf")})
        assert response.status_code == 422

    def test_non_pdf_rejected(self, client):
        response = client.post("/analysis/pdf", files={"file": ("logo.png", b"\x89PNG", "image/png")})
        assert response.status_code == 400
