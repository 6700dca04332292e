"""
URL approval and subresource-integrity checks.

Run: pytest tests/test_integrity.py -q
"""
import base64
import hashlib

import pytest

from asset_loader.core.errors import ConfigError, IntegrityError
from asset_loader.core.integrity import IntegrityValidator, check_sri, has_traversal, parse_sri, sri_for
from asset_loader.core.utils import is_local_ref

@pytest.fixture
def validator():
    return IntegrityValidator(["cdn.jsdelivr.net", "example-cdn.com"], origin="https://app.example.org")

@pytest.mark.parametrize("url", [
    "https://cdn.jsdelivr.net/npm/onnxruntime-web@1.18.0/dist/ort.min.js",
    "https://CDN.JSDELIVR.NET/npm/x.js",
    "./models/yolov10n.onnx",
    "models/yolov10n.onnx",
    "file:///opt/app/models/yolov10n.onnx",
    "https://app.example.org/models/yolov10n.onnx",
    "https://app.example.org:443/lib/ort.min.js",
])
def test_allowed_urls(validator, url):
    assert validator.validate(url) is True
    assert validator.reason(url) == ""

@pytest.mark.parametrize("url, why", [
    ("https://evil.example/model.onnx", "not in allow-list"),
    ("./../../etc/passwd", "path traversal"),
    ("./models/%2e%2e/%2e%2e/secret", "path traversal"),
    ("..\\..\\windows\\system32", "path traversal"),
    ("https://app.example.org/models/../../etc/passwd", "path traversal"),
    ("http://cdn.jsdelivr.net/npm/x.js", "insecure scheme"),
    ("https://user:pw@cdn.jsdelivr.net/x.js", "credentials"),
    ("//evil.example/x.js", "insecure scheme"),
    ("file://evil.example/share/model.onnx", "insecure scheme"),
    ("", "empty"),
])
def test_rejected_urls(validator, url, why):
    assert validator.validate(url) is False
    assert why in validator.reason(url)

def test_without_origin_only_local_refs_are_same_origin():
    v = IntegrityValidator(["example-cdn.com"])
    assert v.validate("./lib/ort.min.js")
    assert not v.validate("https://app.example.org/lib/ort.min.js")

def test_local_refs_carry_no_host():
    for url in ("models/x.onnx", "./lib/ort.min.js", "C:\\models\\x.onnx",
                "file:///opt/app/x.onnx", "file://localhost/opt/app/x.onnx"):
        assert is_local_ref(url), url
    for url in ("//evil.example/x.js", "file://evil.example/x.onnx", "https://cdn.jsdelivr.net/x.js"):
        assert not is_local_ref(url), url

def test_has_traversal_only_matches_whole_segments():
    assert has_traversal("/a/../b")
    assert not has_traversal("/a/..b/c")
    assert not has_traversal("/models/v1..2/x.onnx")

def test_parse_sri_accepts_supported_algorithms():
    data = b"model bytes"
    for algo in ("sha256", "sha384", "sha512"):
        [(got, digest)] = parse_sri(sri_for(data, algo))
        assert got == algo
        assert digest == hashlib.new(algo, data).digest()

@pytest.mark.parametrize("value", [
    "",
    "md5-" + base64.b64encode(hashlib.md5(b"x").digest()).decode(),
    "sha384-!!!not-base64!!!",
    "sha256-" + base64.b64encode(b"short").decode(),
    "sha384",
])
def test_parse_sri_rejects_malformed(value):
    with pytest.raises(ConfigError):
        parse_sri(value)

def test_check_sri_match_and_mismatch():
    data = b"\x00onnx" * 100
    check_sri(data, sri_for(data))
    with pytest.raises(IntegrityError):
        check_sri(data + b"!", sri_for(data))

def test_check_sri_uses_strongest_algorithm_only():
    data = b"runtime"
    weak_ok_strong_bad = f"{sri_for(data, 'sha256')} {sri_for(b'other', 'sha512')}"
    with pytest.raises(IntegrityError):
        check_sri(data, weak_ok_strong_bad)
    weak_bad_strong_ok = f"{sri_for(b'other', 'sha256')} {sri_for(data, 'sha512')}"
    check_sri(data, weak_bad_strong_ok)
