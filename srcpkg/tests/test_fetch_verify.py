# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Iterator

import pytest
import requests

from srcpkg.errors import FetchTimeoutError, IntegrityError, MalformedManifestError, NetworkError, StorageError
from srcpkg.fetch import StagedArchive, fetch_archive
from srcpkg.manifest import parse_checksum
from srcpkg.verify import digest_file, verify_archive


class _FakeResponse:
	def __init__(self, status_code: int, chunks: list[bytes], *, fail_after: Exception | None = None) -> None:
		self.status_code = status_code
		self._chunks = chunks
		self._fail_after = fail_after
		self.closed = False

	def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
		yield from self._chunks
		if self._fail_after is not None:
			raise self._fail_after

	def close(self) -> None:
		self.closed = True


class _FakeSession:
	def __init__(self, response: _FakeResponse | None = None, *, raises: Exception | None = None) -> None:
		self.response = response
		self.raises = raises
		self.calls: list[tuple[str, dict[str, Any]]] = []

	def get(self, url: str, **kwargs: Any) -> _FakeResponse:
		self.calls.append((url, kwargs))
		if self.raises is not None:
			raise self.raises
		assert self.response is not None
		return self.response


def _staging(tmp_path: Path) -> Path:
	d = tmp_path / "staging"
	d.mkdir()
	return d


def test_fetch_file_url_stages_bytes(tmp_path: Path) -> None:
	src = tmp_path / "pkg-1.0.0.tar.gz"
	src.write_bytes(b"x" * 200_000)
	staging = _staging(tmp_path)
	staged = fetch_archive(src.as_uri(), staging_dir=staging)
	assert staged.size == 200_000
	assert staged.path.parent == staging
	assert staged.path.name.endswith("pkg-1.0.0.tar.gz")
	assert staged.path.read_bytes() == src.read_bytes()


def test_fetch_http_streams_with_session(tmp_path: Path) -> None:
	resp = _FakeResponse(200, [b"abc", b"", b"def"])
	session = _FakeSession(resp)
	staged = fetch_archive("https://example.invalid/a/pkg.tar.gz", staging_dir=_staging(tmp_path), session=session, timeout=5)
	assert staged.path.read_bytes() == b"abcdef"
	assert resp.closed
	url, kwargs = session.calls[0]
	assert url == "https://example.invalid/a/pkg.tar.gz"
	assert kwargs["stream"] is True
	assert kwargs["timeout"] == 5
	assert kwargs["headers"]["User-Agent"].startswith("srcpkg/")


def test_fetch_http_status_is_network_error(tmp_path: Path) -> None:
	staging = _staging(tmp_path)
	resp = _FakeResponse(404, [b"not found"])
	with pytest.raises(NetworkError) as exc:
		fetch_archive("https://example.invalid/pkg.tar.gz", staging_dir=staging, session=_FakeSession(resp))
	assert exc.value.reason_code == "HTTP_STATUS"
	assert exc.value.url == "https://example.invalid/pkg.tar.gz"
	assert resp.closed
	assert list(staging.iterdir()) == []


@pytest.mark.parametrize(
	"raised, err_type, reason",
	[
		(requests.exceptions.ConnectionError("refused"), NetworkError, "HOST_UNREACHABLE"),
		(requests.exceptions.ConnectTimeout("slow"), FetchTimeoutError, "FETCH_TIMEOUT"),
		(requests.exceptions.InvalidHeader("bad"), NetworkError, "TRANSPORT_ERROR"),
	],
)
def test_fetch_transport_errors(tmp_path: Path, raised: Exception, err_type: type, reason: str) -> None:
	staging = _staging(tmp_path)
	with pytest.raises(err_type) as exc:
		fetch_archive("https://example.invalid/pkg.tar.gz", staging_dir=staging, session=_FakeSession(raises=raised))
	assert exc.value.reason_code == reason
	assert exc.value.stage == "fetch"
	assert list(staging.iterdir()) == []


def test_fetch_interrupted_body_removes_partial_file(tmp_path: Path) -> None:
	staging = _staging(tmp_path)
	resp = _FakeResponse(200, [b"partial"], fail_after=requests.exceptions.ChunkedEncodingError("reset"))
	with pytest.raises(NetworkError) as exc:
		fetch_archive("https://example.invalid/pkg.tar.gz", staging_dir=staging, session=_FakeSession(resp))
	assert exc.value.reason_code == "TRANSPORT_ERROR"
	assert list(staging.iterdir()) == []


def test_fetch_timeout_is_a_timeout_error(tmp_path: Path) -> None:
	staging = _staging(tmp_path)
	resp = _FakeResponse(200, [b"a"], fail_after=requests.exceptions.ReadTimeout("stalled"))
	with pytest.raises(TimeoutError):
		fetch_archive("https://example.invalid/pkg.tar.gz", staging_dir=staging, session=_FakeSession(resp), timeout=1)
	assert list(staging.iterdir()) == []


def test_fetch_missing_local_source(tmp_path: Path) -> None:
	with pytest.raises(NetworkError) as exc:
		fetch_archive((tmp_path / "gone.tar.gz").as_uri(), staging_dir=_staging(tmp_path))
	assert exc.value.reason_code == "SOURCE_NOT_FOUND"


@pytest.mark.parametrize("url", ["ftp://example.invalid/x.tar.gz", "https:///x.tar.gz", "pkg.tar.gz"])
def test_fetch_rejects_unusable_urls(tmp_path: Path, url: str) -> None:
	with pytest.raises(MalformedManifestError) as exc:
		fetch_archive(url, staging_dir=_staging(tmp_path))
	assert exc.value.reason_code == "URL_INVALID"


def test_fetch_into_missing_staging_dir_is_storage_error(tmp_path: Path) -> None:
	src = tmp_path / "pkg.tar.gz"
	src.write_bytes(b"data")
	with pytest.raises(StorageError) as exc:
		fetch_archive(src.as_uri(), staging_dir=tmp_path / "does-not-exist")
	assert exc.value.reason_code == "STAGING_WRITE_FAILED"


def _staged(tmp_path: Path, data: bytes) -> StagedArchive:
	path = tmp_path / "archive.tar.gz"
	path.write_bytes(data)
	return StagedArchive(path=path, size=len(data), url="https://example.invalid/archive.tar.gz")


def test_verify_accepts_matching_digest(tmp_path: Path) -> None:
	data = b"release bytes"
	staged = _staged(tmp_path, data)
	verified = verify_archive(staged, parse_checksum(hashlib.sha256(data).hexdigest().upper()))
	assert verified.checksum == "sha256:" + hashlib.sha256(data).hexdigest()
	assert verified.path == staged.path


def test_verify_supports_sha512(tmp_path: Path) -> None:
	data = b"release bytes"
	staged = _staged(tmp_path, data)
	verified = verify_archive(staged, parse_checksum("sha512:" + hashlib.sha512(data).hexdigest()))
	assert verified.algorithm == "sha512"
	assert digest_file(staged.path, "sha512") == verified.digest


def test_verify_mismatch_reports_both_digests(tmp_path: Path) -> None:
	data = b"tampered"
	staged = _staged(tmp_path, data)
	with pytest.raises(IntegrityError) as exc:
		verify_archive(staged, parse_checksum("0" * 64))
	err = exc.value
	assert err.reason_code == "CHECKSUM_MISMATCH"
	assert err.stage == "verify"
	assert err.checksum_expected == "sha256:" + "0" * 64
	assert err.checksum_got == "sha256:" + hashlib.sha256(data).hexdigest()
	assert "checksum_expected=" in err.format_human()


def test_verify_single_byte_difference_fails(tmp_path: Path) -> None:
	good = b"a" * 1024
	bad = b"a" * 1023 + b"b"
	with pytest.raises(IntegrityError):
		verify_archive(_staged(tmp_path, bad), parse_checksum(hashlib.sha256(good).hexdigest()))


def test_fetch_timeout_is_also_a_network_error() -> None:
	err = FetchTimeoutError(reason_code="FETCH_TIMEOUT", message="slow")
	assert isinstance(err, NetworkError)
	assert isinstance(err, TimeoutError)
	assert err.stage == "fetch"
