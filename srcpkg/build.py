# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Mapping

from srcpkg.errors import BuildError, BuildTimeoutError, MissingDependencyError
from srcpkg.manifest import Manifest, render_template
from srcpkg.process import ProcessRunner
from srcpkg.resolve import DependencyResolver, ResolvedDependency
from srcpkg.verify import VerifiedArchive

logger = logging.getLogger(__name__)


def require_dependency(manifest: Manifest, resolver: DependencyResolver) -> ResolvedDependency | None:
	if not manifest.build_dependency:
		return None
	dep = resolver.resolve(manifest.build_dependency)
	if not dep.available:
		raise MissingDependencyError(
			reason_code="DEPENDENCY_UNAVAILABLE",
			message=f"build dependency '{manifest.build_dependency}' is not available",
			identity=manifest.identity,
			dependency=manifest.build_dependency,
		)
	logger.info("build dependency %s: %s", dep.name, dep.path)
	return dep


def _check_member_name(name: str, *, archive: Path) -> None:
	p = PurePosixPath(name.replace("\\", "/"))
	if p.is_absolute() or ".." in p.parts:
		raise BuildError(
			reason_code="ARCHIVE_UNSAFE",
			message=f"archive member escapes the unpack directory: {name}",
			artifact_path=str(archive),
		)


def _extract_zip(archive: Path, dest: Path) -> None:
	with zipfile.ZipFile(archive) as zf:
		infos = zf.infolist()
		for info in infos:
			_check_member_name(info.filename, archive=archive)
		zf.extractall(dest)
		# zipfile drops unix permissions; restore the executable bits.
		for info in infos:
			mode = (info.external_attr >> 16) & 0o777
			if mode & 0o111 and not info.is_dir():
				(dest / info.filename).chmod(mode)


def unpack_archive(archive: Path, dest: Path) -> Path:
	"""
	Unpack `archive` into `dest` and return the source root.

	Archives that wrap everything in one top-level directory (GitHub tag
	tarballs, `name-version/`) have that directory returned as the root.
	"""
	dest.mkdir(parents=True, exist_ok=True)
	try:
		if zipfile.is_zipfile(archive):
			_extract_zip(archive, dest)
		elif tarfile.is_tarfile(archive):
			with tarfile.open(archive, "r:*") as tf:
				tf.extractall(dest, filter="data")
		else:
			raise BuildError(
				reason_code="ARCHIVE_UNSUPPORTED",
				message="source archive is neither a tar nor a zip file",
				artifact_path=str(archive),
			)
	except tarfile.FilterError as err:
		raise BuildError(reason_code="ARCHIVE_UNSAFE", message=str(err), artifact_path=str(archive)) from err
	except (tarfile.TarError, zipfile.BadZipFile, EOFError) as err:
		raise BuildError(reason_code="ARCHIVE_CORRUPT", message=str(err), artifact_path=str(archive)) from err
	entries = list(dest.iterdir())
	if len(entries) == 1 and entries[0].is_dir():
		return entries[0]
	return dest


def build_env(dep: ResolvedDependency | None, base: Mapping[str, str] | None = None) -> dict[str, str]:
	env = dict(os.environ if base is None else base)
	if dep is not None and dep.path is not None:
		bin_dir = str(dep.path.parent)
		path = env.get("PATH", "")
		env["PATH"] = bin_dir + (os.pathsep + path if path else "")
	return env


def build_and_install(
	verified: VerifiedArchive,
	manifest: Manifest,
	*,
	prefix: Path,
	work_dir: Path,
	resolver: DependencyResolver,
	runner: ProcessRunner,
	timeout: float | None = None,
	env: Mapping[str, str] | None = None,
) -> Path:
	"""
	Build `verified` with the manifest's build command and install into `prefix`.

	`work_dir` must be private to this invocation; the caller removes it. Any
	previous install at `prefix` is replaced, and `prefix` is removed again if
	the build does not succeed.
	"""
	dep = require_dependency(manifest, resolver)
	src_root = unpack_archive(verified.path, work_dir / "src")
	logger.debug("unpacked %s into %s", verified.path.name, src_root)

	variables = manifest.template_vars(prefix=prefix)
	argv = [render_template(arg, variables) for arg in manifest.build_command]

	if prefix.exists():
		logger.info("replacing previous install at %s", prefix)
		shutil.rmtree(prefix)
	prefix.mkdir(parents=True)
	try:
		try:
			result = runner.run(argv, cwd=src_root, env=build_env(dep, env), timeout=timeout)
		except subprocess.TimeoutExpired as err:
			raise BuildTimeoutError(
				reason_code="BUILD_TIMEOUT",
				message=f"build did not finish within {timeout}s",
				identity=manifest.identity,
				stdout=_text(err.stdout),
				stderr=_text(err.stderr),
			) from err
		except OSError as err:
			raise BuildError(
				reason_code="BUILD_COMMAND_NOT_STARTED",
				message=f"cannot start build command {argv[0]!r}: {err}",
				identity=manifest.identity,
			) from err
		if result.returncode != 0:
			raise BuildError(
				reason_code="BUILD_FAILED",
				message=f"build command exited with status {result.returncode}",
				identity=manifest.identity,
				returncode=result.returncode,
				stdout=result.stdout,
				stderr=result.stderr,
			)
	except BaseException:
		shutil.rmtree(prefix, ignore_errors=True)
		raise
	logger.info("installed %s %s into %s", manifest.name, manifest.version, prefix)
	return prefix


def _text(data: str | bytes | None) -> str | None:
	if isinstance(data, bytes):
		return data.decode("utf-8", errors="replace")
	return data
