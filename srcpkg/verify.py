# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from srcpkg.errors import IntegrityError, StorageError
from srcpkg.fetch import StagedArchive
from srcpkg.manifest import Checksum

logger = logging.getLogger(__name__)

_READ_SIZE = 1024 * 1024


@dataclass(frozen=True)
class VerifiedArchive:
	"""A staged archive whose digest matched the manifest."""

	path: Path
	size: int
	url: str
	algorithm: str
	digest: str

	@property
	def checksum(self) -> str:
		return f"{self.algorithm}:{self.digest}"

	def to_dict(self) -> dict[str, Any]:
		return {
			"path": str(self.path),
			"size": self.size,
			"url": self.url,
			"checksum": self.checksum,
		}


def digest_file(path: Path, algorithm: str) -> str:
	"""Return the lowercase hex digest of the whole file at `path`."""
	h = hashlib.new(algorithm)
	with path.open("rb") as f:
		while True:
			chunk = f.read(_READ_SIZE)
			if not chunk:
				break
			h.update(chunk)
	return h.hexdigest()


def verify_archive(staged: StagedArchive, expected: Checksum) -> VerifiedArchive:
	"""
	Hash every byte of `staged` and compare with `expected`.

	Any difference is an `IntegrityError`; there is no tolerance and no
	warning-only mode. The error carries both digests.
	"""
	try:
		got = digest_file(staged.path, expected.algorithm)
	except OSError as err:
		raise StorageError(
			reason_code="STAGED_ARCHIVE_UNREADABLE",
			message=f"cannot read staged archive: {err}",
			stage="verify",
			url=staged.url,
			artifact_path=str(staged.path),
		) from err
	if not hmac.compare_digest(got.lower(), expected.hex.lower()):
		raise IntegrityError(
			reason_code="CHECKSUM_MISMATCH",
			message=f"{expected.algorithm} of downloaded archive does not match the manifest",
			url=staged.url,
			artifact_path=str(staged.path),
			checksum_expected=str(expected),
			checksum_got=f"{expected.algorithm}:{got}",
		)
	logger.info("verified %s (%s)", staged.url, expected)
	return VerifiedArchive(
		path=staged.path,
		size=staged.size,
		url=staged.url,
		algorithm=expected.algorithm,
		digest=got,
	)
