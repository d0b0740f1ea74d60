# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from srcpkg import __version__
from srcpkg.bump import BumpOptions, bump_v0
from srcpkg.catalog import load_release
from srcpkg.config import load_options, log_level
from srcpkg.errors import (
	BuildError,
	IntegrityError,
	MissingDependencyError,
	NetworkError,
	SrcpkgError,
	StageTimeoutError,
	StorageError,
	ValidationFailure,
)
from srcpkg.pipeline import InstallReport, install_v0, verify_v0

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FETCH = 2
EXIT_INTEGRITY = 3
EXIT_MISSING_DEPENDENCY = 4
EXIT_BUILD = 5
EXIT_VALIDATION = 6
EXIT_TIMEOUT = 7
EXIT_CANCELLED = 130

# Most specific first: timeouts are checked before the stage they happened in.
_EXIT_CODES: tuple[tuple[type[SrcpkgError], int], ...] = (
	(StageTimeoutError, EXIT_TIMEOUT),
	(NetworkError, EXIT_FETCH),
	(StorageError, EXIT_FETCH),
	(IntegrityError, EXIT_INTEGRITY),
	(MissingDependencyError, EXIT_MISSING_DEPENDENCY),
	(BuildError, EXIT_BUILD),
	(ValidationFailure, EXIT_VALIDATION),
)


def exit_code_for(err: SrcpkgError) -> int:
	for cls, code in _EXIT_CODES:
		if isinstance(err, cls):
			return code
	return EXIT_ERROR


def report_exit_code(report: InstallReport) -> int:
	"""
	Exit code contract:
	- 0: installed (or verified) and every post-install check passed
	- 2: fetch failed (network or staging storage)
	- 3: archive checksum mismatch
	- 4: build dependency missing
	- 5: build failed
	- 6: post-install validation failed
	- 7: fetch or build timed out
	- 1: anything else (malformed manifest, internal error)
	"""
	if report.ok:
		return EXIT_OK
	if not report.errors:
		return EXIT_ERROR
	return exit_code_for(report.errors[0])


def _add_fetch_args(p: argparse.ArgumentParser) -> None:
	p.add_argument("manifest", type=Path, help="Path to a formula manifest or a catalog of releases")
	p.add_argument("--version", dest="release", default=None, help="Release to use (default: the highest version)")
	p.add_argument("--name", default=None, help="Package name, when the catalog holds several packages")
	p.add_argument(
		"--tmp-root",
		type=Path,
		default=None,
		help="Directory for per-invocation staging (default: $SRCPKG_TMPDIR or the system temp dir)",
	)
	p.add_argument("--fetch-timeout", type=float, default=None, help="Download deadline in seconds (default: $SRCPKG_FETCH_TIMEOUT)")
	p.add_argument("--json", action="store_true", help="Emit machine-readable JSON report")


def _build_parser() -> argparse.ArgumentParser:
	p = argparse.ArgumentParser(prog="srcpkg", description="Build and install a package from a verified source archive")
	p.add_argument("--version", action="version", version=f"srcpkg {__version__}")
	p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-v info, -vv debug)")
	p.add_argument("--log-level", default=None, help="Explicit log level (default: $SRCPKG_LOG_LEVEL or WARNING)")
	sub = p.add_subparsers(dest="cmd", required=True)

	install = sub.add_parser("install", help="Fetch, verify, build, install and validate a release")
	_add_fetch_args(install)
	install.add_argument("--prefix", type=Path, default=None, help="Install root (default: $SRCPKG_PREFIX or ~/.local/srcpkg)")
	install.add_argument("--build-timeout", type=float, default=None, help="Build deadline in seconds (default: $SRCPKG_BUILD_TIMEOUT)")

	verify = sub.add_parser("verify", help="Fetch a release and check its checksum without building")
	_add_fetch_args(verify)

	bump = sub.add_parser("bump", help="Append a new release to a catalog, computing its checksum from the download")
	bump.add_argument("catalog", type=Path, help="Path to the catalog (a single manifest is upgraded to a catalog)")
	bump.add_argument("--version", dest="release", required=True, help="New release version")
	bump.add_argument("--name", default=None, help="Package name, when the catalog holds several packages")
	bump.add_argument("--allow-older", action="store_true", help="Allow recording a version older than the latest")
	bump.add_argument("--tmp-root", type=Path, default=None, help="Directory for staging the download")
	bump.add_argument("--fetch-timeout", type=float, default=None, help="Download deadline in seconds")
	bump.add_argument("--json", action="store_true", help="Emit the recorded manifest as JSON")
	return p


def _configure_logging(args: argparse.Namespace) -> None:
	if args.log_level:
		level = args.log_level.upper()
	elif args.verbose >= 2:
		level = "DEBUG"
	elif args.verbose == 1:
		level = "INFO"
	else:
		level = log_level()
	logging.basicConfig(
		level=getattr(logging, level, logging.WARNING),
		format="%(levelname)s %(name)s: %(message)s",
		stream=sys.stderr,
	)


def _emit_report(report: InstallReport, *, as_json: bool) -> int:
	code = report_exit_code(report)
	if as_json:
		print(json.dumps(report.to_dict(), sort_keys=True, separators=(",", ":")))
		return code
	# Human mode: one summary line, then findings.
	ident = report.identity
	if report.ok:
		where = f" -> {report.result.installed_path}" if report.result is not None else ""
		print(f"{ident.name} {ident.version}: ok{where}")
		return code
	for err in report.errors:
		print(err.format_human(), file=sys.stderr)
	if report.result is not None:
		for check in report.result.validation_report:
			mark = "ok" if check.passed else "FAILED"
			print(f"- {check.label}: {mark} ({check.detail})", file=sys.stderr)
	return code


def _fail(err: SrcpkgError, *, as_json: bool) -> int:
	if as_json:
		print(json.dumps({"ok": False, "errors": [err.to_dict()]}, sort_keys=True, separators=(",", ":")))
	else:
		print(err.format_human(), file=sys.stderr)
	return exit_code_for(err)


def main(argv: list[str] | None = None) -> int:
	p = _build_parser()
	args = p.parse_args(argv)
	_configure_logging(args)

	try:
		return _dispatch(args)
	except KeyboardInterrupt:
		print("srcpkg: cancelled", file=sys.stderr)
		return EXIT_CANCELLED


def _dispatch(args: argparse.Namespace) -> int:
	if args.cmd in ("install", "verify"):
		try:
			opts = load_options(
				prefix_root=getattr(args, "prefix", None),
				tmp_root=args.tmp_root,
				fetch_timeout=args.fetch_timeout,
				build_timeout=getattr(args, "build_timeout", None),
			)
			manifest = load_release(args.manifest, name=args.name, version=args.release)
		except SrcpkgError as err:
			return _fail(err, as_json=args.json)
		if args.cmd == "install":
			report = install_v0(manifest, opts)
		else:
			report = verify_v0(manifest, opts)
		return _emit_report(report, as_json=args.json)

	if args.cmd == "bump":
		try:
			env_opts = load_options(tmp_root=args.tmp_root, fetch_timeout=args.fetch_timeout)
			release = bump_v0(
				BumpOptions(
					catalog_path=args.catalog,
					version=args.release,
					tmp_root=env_opts.tmp_root,
					name=args.name,
					timeout=env_opts.fetch_timeout,
					allow_older=bool(args.allow_older),
				)
			)
		except SrcpkgError as err:
			return _fail(err, as_json=args.json)
		except Exception as err:
			return _fail(SrcpkgError(reason_code="INTERNAL_ERROR", message=str(err), stage="catalog"), as_json=args.json)
		if args.json:
			print(json.dumps(release.to_dict(), sort_keys=True, separators=(",", ":")))
		else:
			print(f"{release.name} {release.version}: {release.checksum}")
		return EXIT_OK

	raise AssertionError("unreachable")
