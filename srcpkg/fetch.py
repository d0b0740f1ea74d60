# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Iterable, Protocol
from urllib.parse import unquote, urlsplit
from urllib.request import url2pathname

import requests

from srcpkg import __version__
from srcpkg.errors import FetchTimeoutError, MalformedManifestError, NetworkError, SrcpkgError, StorageError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("https", "http", "file")
CHUNK_SIZE = 64 * 1024


class Transport(Protocol):
	"""The part of `requests.Session` the fetcher relies on."""

	def get(self, url: str, **kwargs: Any) -> Any: ...


@dataclass(frozen=True)
class StagedArchive:
	"""Downloaded, not yet verified, archive bytes in the staging directory."""

	path: Path
	size: int
	url: str

	def to_dict(self) -> dict[str, Any]:
		return {"path": str(self.path), "size": self.size, "url": self.url}


class _Deadline:
	def __init__(self, timeout: float | None) -> None:
		self.timeout = timeout
		self._end = time.monotonic() + timeout if timeout is not None else None

	def expired(self) -> bool:
		return self._end is not None and time.monotonic() > self._end


def check_url(url: str) -> str:
	"""Return the URL scheme, or raise if `url` is not a usable absolute URI."""
	parts = urlsplit(url)
	scheme = parts.scheme.lower()
	if scheme not in SUPPORTED_SCHEMES:
		raise MalformedManifestError(
			reason_code="URL_INVALID",
			message=f"source URL must be an absolute {'/'.join(SUPPORTED_SCHEMES)} URI",
			stage="fetch",
			url=url,
		)
	if scheme in ("http", "https") and not parts.hostname:
		raise MalformedManifestError(reason_code="URL_INVALID", message="source URL has no host", stage="fetch", url=url)
	if scheme == "file" and not parts.path:
		raise MalformedManifestError(reason_code="URL_INVALID", message="file URL has no path", stage="fetch", url=url)
	return scheme


def archive_filename(url: str) -> str:
	name = PurePosixPath(unquote(urlsplit(url).path)).name
	return name or "archive"


def fetch_archive(
	url: str,
	*,
	staging_dir: Path,
	session: Transport | None = None,
	timeout: float | None = None,
) -> StagedArchive:
	"""
	Download `url` into a uniquely named file inside `staging_dir`.

	`timeout` is an overall deadline in seconds covering connect, status and
	body. The caller owns `staging_dir` and its cleanup; a partially written
	file is removed here before any error propagates.
	"""
	scheme = check_url(url)
	deadline = _Deadline(timeout)
	try:
		fd, tmp_name = tempfile.mkstemp(prefix="archive-", suffix=".part", dir=staging_dir)
	except OSError as err:
		raise StorageError(
			reason_code="STAGING_WRITE_FAILED",
			message=f"cannot create staging file: {err}",
			url=url,
			artifact_path=str(staging_dir),
		) from err
	tmp_path = Path(tmp_name)
	logger.info("fetching %s", url)
	try:
		try:
			with os.fdopen(fd, "wb") as out:
				if scheme == "file":
					size = _copy_file_url(url, out, deadline=deadline)
				elif session is not None:
					size = _download(session, url, out, deadline=deadline)
				else:
					with requests.Session() as own:
						size = _download(own, url, out, deadline=deadline)
			final = tmp_path.with_name(f"{tmp_path.name[: -len('.part')]}-{archive_filename(url)}")
			os.replace(tmp_path, final)
		except SrcpkgError:
			raise
		except OSError as err:
			raise StorageError(
				reason_code="STAGING_WRITE_FAILED",
				message=f"cannot write staged archive: {err}",
				url=url,
				artifact_path=str(tmp_path),
			) from err
	except BaseException:
		tmp_path.unlink(missing_ok=True)
		raise
	logger.debug("fetched %d bytes into %s", size, final)
	return StagedArchive(path=final, size=size, url=url)


def _write_chunks(chunks: Iterable[bytes], out: BinaryIO, *, url: str, deadline: _Deadline) -> int:
	size = 0
	for chunk in chunks:
		if deadline.expired():
			raise FetchTimeoutError(
				reason_code="FETCH_TIMEOUT",
				message=f"download did not finish within {deadline.timeout}s",
				url=url,
			)
		if not chunk:
			continue
		try:
			out.write(chunk)
		except OSError as err:
			raise StorageError(
				reason_code="STAGING_WRITE_FAILED",
				message=f"cannot write staged archive: {err}",
				url=url,
			) from err
		size += len(chunk)
	return size


def _download(session: Transport, url: str, out: BinaryIO, *, deadline: _Deadline) -> int:
	try:
		resp = session.get(
			url,
			stream=True,
			timeout=deadline.timeout,
			headers={"User-Agent": f"srcpkg/{__version__}"},
		)
	except requests.exceptions.Timeout as err:
		raise FetchTimeoutError(reason_code="FETCH_TIMEOUT", message=f"timed out connecting: {err}", url=url) from err
	except requests.exceptions.ConnectionError as err:
		raise NetworkError(reason_code="HOST_UNREACHABLE", message=f"cannot reach host: {err}", url=url) from err
	except requests.exceptions.RequestException as err:
		raise NetworkError(reason_code="TRANSPORT_ERROR", message=str(err), url=url) from err

	try:
		status = int(resp.status_code)
		if not 200 <= status < 300:
			raise NetworkError(reason_code="HTTP_STATUS", message=f"server answered HTTP {status}", url=url)
		try:
			return _write_chunks(resp.iter_content(chunk_size=CHUNK_SIZE), out, url=url, deadline=deadline)
		except requests.exceptions.Timeout as err:
			raise FetchTimeoutError(reason_code="FETCH_TIMEOUT", message=f"timed out reading body: {err}", url=url) from err
		except requests.exceptions.RequestException as err:
			raise NetworkError(reason_code="TRANSPORT_ERROR", message=f"download interrupted: {err}", url=url) from err
	finally:
		resp.close()


def _iter_file(f: BinaryIO) -> Iterable[bytes]:
	while True:
		chunk = f.read(CHUNK_SIZE)
		if not chunk:
			return
		yield chunk


def _copy_file_url(url: str, out: BinaryIO, *, deadline: _Deadline) -> int:
	src = Path(url2pathname(urlsplit(url).path))
	try:
		f = src.open("rb")
	except FileNotFoundError as err:
		raise NetworkError(reason_code="SOURCE_NOT_FOUND", message=f"no such file: {src}", url=url) from err
	except OSError as err:
		raise NetworkError(reason_code="SOURCE_UNREADABLE", message=str(err), url=url) from err
	with f:
		return _write_chunks(_iter_file(f), out, url=url, deadline=deadline)
