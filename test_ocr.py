#!/usr/bin/env python3
"""
OCR Client Tests

Tests the OCR.space client with mocked HTTP responses and PDFs generated with
PyMuPDF: single calls, page splitting, key rotation and error handling.
"""

import json
import re

import fitz
import pytest
import responses

from ocr import OCRError, OCROptions, OCRSpaceClient


ENDPOINT = "https://api.ocr.space/parse/image"


def make_pdf(pages=1, text="Décret portant approbation"):
    doc = fitz.open()
    for number in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"{text} - page {number + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def multipart_fields(request):
    """Decode the form fields of a multipart request body"""
    boundary = request.headers["Content-Type"].split("boundary=")[1].encode()
    fields = {}
    for part in request.body.split(b"--" + boundary):
        head, separator, value = part.partition(b"\r\n\r\n")
        if not separator:
            continue
        name = re.search(rb'name="([^"]+)"', head).group(1).decode()
        fields[name] = value[:-2].decode()
    return fields


def ocr_ok(*texts):
    return {
        "ParsedResults": [{"ParsedText": t, "FileParseExitCode": 1} for t in texts],
        "OCRExitCode": 1,
        "IsErroredOnProcessing": False,
    }


def ocr_failed(message):
    return {"OCRExitCode": 3, "IsErroredOnProcessing": True, "ErrorMessage": [message]}


class TestSingleCall:
    """Test one-shot OCR requests"""

    def setup_method(self):
        self.client = OCRSpaceClient(endpoint=ENDPOINT, timeout=5)

    def teardown_method(self):
        self.client.close()

    @responses.activate
    def test_form_fields_and_header(self):
        responses.add(responses.POST, ENDPOINT, json=ocr_ok("Bonjour"), status=200)

        text = self.client.extract_single(make_pdf(), "key-1", OCROptions(language="fre", engine=2))

        assert text == "Bonjour"
        request = responses.calls[0].request
        assert request.headers["apikey"] == "key-1"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        form = multipart_fields(request)
        assert form["language"] == "fre"
        assert form["OCREngine"] == "2"
        assert form["isOverlayRequired"] == "false"
        assert form["base64Image"].startswith("data:application/pdf;base64,")

    @responses.activate
    def test_all_parsed_results_joined(self):
        responses.add(responses.POST, ENDPOINT, json=ocr_ok("page one", "", "page two"), status=200)

        text = self.client.extract_single(make_pdf(), "k", OCROptions())

        assert text == "page one\n\npage two"

    @responses.activate
    def test_http_error(self):
        responses.add(responses.POST, ENDPOINT, body="oops", status=500)

        with pytest.raises(OCRError, match="OCR HTTP 500"):
            self.client.extract_single(make_pdf(), "k", OCROptions())

    @responses.activate
    def test_processing_error(self):
        responses.add(responses.POST, ENDPOINT, json=ocr_failed("Unable to recognize the file type"), status=200)

        with pytest.raises(OCRError, match="Unable to recognize"):
            self.client.extract_single(make_pdf(), "k", OCROptions())

    @responses.activate
    def test_invalid_json(self):
        responses.add(responses.POST, ENDPOINT, body="<html>", status=200)

        with pytest.raises(OCRError):
            self.client.extract_single(make_pdf(), "k", OCROptions())


class TestSplitting:
    """Test page-group splitting of long or large documents"""

    def setup_method(self):
        self.client = OCRSpaceClient(endpoint=ENDPOINT, timeout=5)

    def teardown_method(self):
        self.client.close()

    @responses.activate
    def test_small_document_single_call(self):
        responses.add(responses.POST, ENDPOINT, json=ocr_ok("all"), status=200)

        result = self.client.extract(make_pdf(pages=3), ["k"], max_pages_per_call=3)

        assert result.text == "all"
        assert result.calls == 1
        assert result.pages == 3
        assert result.provider == "ocr.space"
        assert len(responses.calls) == 1

    @responses.activate
    def test_page_groups(self):
        counter = {'n': 0}

        def callback(request):
            counter['n'] += 1
            return 200, {}, json.dumps(ocr_ok(f"group {counter['n']}"))

        responses.add_callback(responses.POST, ENDPOINT, callback=callback)

        result = self.client.extract(make_pdf(pages=5), ["k"], max_pages_per_call=2)

        assert result.calls == 3
        assert result.pages == 5
        assert result.text == "group 1\n\ngroup 2\n\ngroup 3"

    @responses.activate
    def test_oversized_pages_get_placeholder(self):
        responses.add(responses.POST, ENDPOINT, json=ocr_failed("File size exceeds the maximum"), status=200)

        result = self.client.extract(make_pdf(pages=2), ["k"], max_size_bytes=1, max_pages_per_call=3)

        assert result.calls == 2
        assert "[OCR failed page 1 (> 0 KB)" in result.text
        assert "[OCR failed page 2 (> 0 KB)" in result.text

    @responses.activate
    def test_oversized_page_quota_error_propagates(self):
        responses.add(responses.POST, ENDPOINT, json=ocr_failed("Quota exceeded for this key"), status=200)

        with pytest.raises(OCRError, match="Quota"):
            self.client.extract(make_pdf(pages=1), ["k"], max_size_bytes=1)


class TestKeyRotation:
    """Test rotation across API keys on quota failures"""

    def setup_method(self):
        self.client = OCRSpaceClient(endpoint=ENDPOINT, timeout=5)
        self.keys_seen = []

    def teardown_method(self):
        self.client.close()

    def _callback(self, answers):
        def callback(request):
            key = request.headers["apikey"]
            self.keys_seen.append(key)
            status, payload = answers[key]
            return status, {}, json.dumps(payload)
        return callback

    @responses.activate
    def test_quota_error_rotates_to_next_key(self):
        responses.add_callback(responses.POST, ENDPOINT, callback=self._callback({
            "k1": (200, ocr_failed("You may only perform 10 requests. Maximum OCR requests reached")),
            "k2": (200, ocr_ok("texte du décret")),
        }))

        result = self.client.extract(make_pdf(), ["k1", "k2"])

        assert result.text == "texte du décret"
        assert self.keys_seen == ["k1", "k2"]

    @responses.activate
    def test_http_429_rotates(self):
        responses.add_callback(responses.POST, ENDPOINT, callback=self._callback({
            "k1": (429, {}),
            "k2": (200, ocr_ok("ok")),
        }))

        assert self.client.extract(make_pdf(), ["k1", "k2"]).text == "ok"

    @responses.activate
    def test_non_quota_error_does_not_rotate(self):
        responses.add_callback(responses.POST, ENDPOINT, callback=self._callback({
            "k1": (500, {}),
            "k2": (200, ocr_ok("never reached")),
        }))

        with pytest.raises(OCRError, match="OCR HTTP 500"):
            self.client.extract(make_pdf(), ["k1", "k2"])
        assert self.keys_seen == ["k1"]

    @responses.activate
    def test_all_keys_exhausted(self):
        responses.add_callback(responses.POST, ENDPOINT, callback=self._callback({
            "k1": (200, ocr_failed("quota exceeded (k1)")),
            "k2": (200, ocr_failed("quota exceeded (k2)")),
        }))

        with pytest.raises(OCRError, match=r"\(k2\)"):
            self.client.extract(make_pdf(), ["k1", "k2"])

    def test_no_keys(self):
        with pytest.raises(OCRError):
            self.client.extract(make_pdf(), [])
