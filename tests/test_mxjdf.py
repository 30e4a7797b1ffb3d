"""Tests for Mixam order document building and validation."""

import json

import pytest

from storywizard.mixam.mxjdf import (
    FALLBACK_PHONE,
    build_mxjdf_document,
    serialize_mxjdf_document,
    size_spec,
    to_mixam_address,
    validate_mxjdf_document,
    webhook_url,
    weight_id,
)


def _order(**overrides) -> dict:
    order = {
        "id": "ord1",
        "quantity": 2,
        "contactEmail": "parent@test",
        "contactPhone": "+44 123",
        "shippingAddress": {
            "name": "Jane Q Parent", "line1": "1 High St", "line2": "",
            "city": "Leeds", "state": "", "postalCode": "LS1 1AA", "country": "GB",
        },
        "printableFiles": {
            "coverPdfUrl": "https://cdn.test/cover.pdf",
            "interiorPdfUrl": "https://cdn.test/interior.pdf",
        },
        "printableMetadata": {"trimSize": "8x10", "interiorPageCount": 22},
        "productSnapshot": {
            "mixamSpec": {
                "binding": {"type": "perfect"},
                "interior": {"material": {"type": "silk", "weight": 150}},
                "cover": {"material": {
                    "type": "gloss", "weight": 300,
                    "refinings": [{"type": "LAMINATION", "effect": "MATT"}],
                }},
            },
        },
    }
    order.update(overrides)
    return order


@pytest.fixture(autouse=True)
def clear_webhook_env(monkeypatch):
    monkeypatch.delenv("MIXAM_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("APP_URL", raising=False)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

class TestTables:
    def test_size_spec(self):
        assert size_spec("A5") == {"format": 5}
        assert size_spec("8x10") == {"format": 4, "standardSize": "IN_8_5_X_11"}
        assert size_spec("6x9") == {"format": 4, "standardSize": "US_ROYAL"}
        assert size_spec(None) == {"format": 4}

    def test_weight_id_keeps_zero(self):
        assert weight_id(90, False, "interior") == 0
        assert weight_id(170, False, "interior") == 5
        assert weight_id(170, True, "interior") == 4
        assert weight_id(None, False, "cover") == 14
        assert weight_id("bogus", True, "interior") == 4

    def test_address_split_and_defaults(self):
        address = to_mixam_address({"name": "Jane Q Parent", "city": "Leeds"}, "a@b", None, ("Customer", "Name"))
        assert address["firstName"] == "Jane"
        assert address["lastName"] == "Q Parent"
        assert address["county"] == "Leeds"
        assert address["phoneNumber"] == FALLBACK_PHONE
        assert "line2" not in address
        blank = to_mixam_address({}, "a@b", "1", ("Billing", "Contact"))
        assert (blank["firstName"], blank["lastName"]) == ("Billing", "Contact")

    def test_webhook_url(self, monkeypatch):
        assert webhook_url() == "https://example.com/webhook"
        monkeypatch.setenv("APP_URL", "https://app.test/")
        assert webhook_url() == "https://app.test/api/webhooks/mixam"
        monkeypatch.setenv("MIXAM_WEBHOOK_URL", "https://hooks.test/m")
        assert webhook_url() == "https://hooks.test/m"


# ---------------------------------------------------------------------------
# build_mxjdf_document
# ---------------------------------------------------------------------------

class TestBuildDocument:
    def test_legacy_paperback(self):
        doc = build_mxjdf_document(_order())
        item = doc["orderItems"][0]
        assert doc["metadata"]["externalOrderId"] == "ord1"
        assert item["subProductId"] == 0
        assert item["metadata"] == {"externalItemId": "ITEM-ord1"}
        assert item["itemSpecification"]["copies"] == 2
        assert [a["name"] for a in item["assets"]] == [
            "storybook-ord1-cover.pdf", "storybook-ord1-interior.pdf",
        ]

        bound, cover = item["itemSpecification"]["components"]
        assert bound["componentType"] == "BOUND"
        assert bound["pages"] == 24
        assert bound["standardSize"] == "IN_8_5_X_11"
        assert bound["substrate"] == {"typeId": 1, "weightId": 4, "colourId": 0}
        assert bound["binding"]["type"] == "PUR"
        assert cover["lamination"] == "MATT"
        assert cover["backColours"] == "PROCESS"
        assert cover["substrate"] == {"typeId": 2, "weightId": 4, "colourId": 0}

        assert doc["billingAddress"] == doc["deliveries"][0]["address"]
        assert doc["deliveries"][0]["itemDeliveryDetails"] == [{"itemId": "ITEM-ord1", "copies": 2}]
        assert doc["paymentMethod"] == "ACCOUNT"
        assert doc["plainPackaging"] is False

    def test_legacy_hardcover(self):
        order = _order()
        order["productSnapshot"]["mixamSpec"]["binding"] = {"type": "case_with_sewing", "sewn": True}
        item = build_mxjdf_document(order)["orderItems"][0]
        components = item["itemSpecification"]["components"]
        assert item["subProductId"] == 1
        assert [c["componentType"] for c in components] == ["BOUND", "COVER", "END_PAPERS"]
        assert components[0]["binding"]["type"] == "CASE"
        assert components[0]["binding"]["sewn"] is True
        assert components[1]["substrate"] == {"typeId": 1, "weightId": 5, "colourId": 0}
        assert components[1]["backColours"] == "NONE"
        assert components[2]["substrate"] == {"typeId": 0, "weightId": 0, "colourId": 1}

    def test_validated_mapping(self):
        order = _order()
        order["productSnapshot"]["mixamSpec"]["binding"] = {"allowHeadTailBandSelection": True}
        order["customOptions"] = {"headTailBandColor": "dark blue"}
        order["productSnapshot"]["mixamMapping"] = {
            "validated": True,
            "subProductId": 7,
            "boundComponent": {
                "format": 5, "orientation": "PORTRAIT",
                "substrate": {"typeId": 9, "weightId": 0, "colourId": 0},
            },
            "coverComponent": {
                "format": 5, "standardSize": "X", "orientation": "PORTRAIT",
                "substrate": {"typeId": 8, "weightId": 3, "colourId": 0}, "lamination": "GLOSS",
            },
            "binding": {"type": "CASE", "edge": "LEFT_RIGHT", "sewn": True},
            "endPapersComponent": {"substrate": {"typeId": 0, "weightId": 0, "colourId": 2}},
        }
        item = build_mxjdf_document(order)["orderItems"][0]
        bound, cover, end_papers = item["itemSpecification"]["components"]
        assert item["subProductId"] == 7
        assert bound["substrate"]["weightId"] == 0
        assert bound["binding"]["headAndTailBands"] == "DARK_BLUE"
        assert "standardSize" not in bound
        assert cover["standardSize"] == "X"
        assert cover["lamination"] == "GLOSS"
        assert end_papers["substrate"]["colourId"] == 2

    def test_separate_billing_address(self):
        billing = {"name": "Acme", "line1": "2 Low Rd", "city": "York", "postalCode": "YO1",
                   "email": "billing@test"}
        doc = build_mxjdf_document(_order(), billing_address=billing, payment_method="TEST_ORDER")
        assert doc["billingAddress"]["firstName"] == "Acme"
        assert doc["billingAddress"]["lastName"] == "Contact"
        assert doc["billingAddress"]["emailAddress"] == "billing@test"
        assert doc["invoiceAddress"] == doc["billingAddress"]
        assert doc["paymentMethod"] == "TEST_ORDER"

    def test_missing_pdfs(self):
        with pytest.raises(ValueError, match="Printable PDFs"):
            build_mxjdf_document(_order(printableFiles={"coverPdfUrl": "x"}))

    def test_bad_payment_method(self):
        with pytest.raises(ValueError, match="payment method"):
            build_mxjdf_document(_order(), payment_method="CASH")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_built_document_is_valid(self):
        assert validate_mxjdf_document(build_mxjdf_document(_order())) == []

    def test_empty_document(self):
        errors = validate_mxjdf_document({})
        assert "metadata.externalOrderId is required" in errors
        assert "At least one orderItem is required" in errors
        assert "At least one delivery is required" in errors
        assert "billingAddress is required" in errors

    def test_item_and_address_fields(self):
        doc = build_mxjdf_document(_order())
        doc["orderItems"][0]["assets"] = []
        doc["billingAddress"] = {"firstName": "J"}
        errors = validate_mxjdf_document(doc)
        assert "orderItem[0]: assets is required" in errors
        assert "billingAddress.line1 is required" in errors
        assert "billingAddress.firstName is required" not in errors

    def test_serialize(self):
        doc = build_mxjdf_document(_order())
        assert json.loads(serialize_mxjdf_document(doc)) == doc
