# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import hashlib
import io
import json
import sys
import tarfile
from pathlib import Path
from typing import Any, Callable

import pytest

# A tiny "toolchain": the build command runs this script with the install
# prefix, and it drops the listed files into it (marked executable).
_BUILD_SCRIPT = """
import pathlib
import subprocess
import sys
import time

prefix = pathlib.Path(sys.argv[1])
for rel in {produce!r}:
	out = prefix / rel
	out.parent.mkdir(parents=True, exist_ok=True)
	out.write_text("#!/bin/sh\\necho {name}\\n")
	out.chmod(0o755)
if {spawn_child!r}:
	# Outlives this script and keeps its stdout/stderr open.
	subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
time.sleep({sleep!r})
if {exit_code!r}:
	print("compile error: something broke", file=sys.stderr)
sys.exit({exit_code!r})
"""


def _add_bytes(tf: tarfile.TarFile, name: str, data: bytes, *, mode: int = 0o644) -> None:
	info = tarfile.TarInfo(name)
	info.size = len(data)
	info.mode = mode
	tf.addfile(info, io.BytesIO(data))


@pytest.fixture
def make_archive(tmp_path: Path) -> Callable[..., Path]:
	"""
	Build a `name-version.tar.gz` source tarball in `tmp_path / "upstream"`.

	The archive wraps everything in a `name-version/` directory, like tag
	tarballs from code hosts do.
	"""

	def _make(
		version: str = "1.0.1",
		*,
		name: str = "tool",
		produce: tuple[str, ...] = ("bin/tool",),
		exit_code: int = 0,
		sleep: float = 0,
		spawn_child: bool = False,
	) -> Path:
		upstream = tmp_path / "upstream"
		upstream.mkdir(parents=True, exist_ok=True)
		path = upstream / f"{name}-{version}.tar.gz"
		script = _BUILD_SCRIPT.format(
			produce=list(produce),
			exit_code=exit_code,
			name=name,
			sleep=sleep,
			spawn_child=spawn_child,
		)
		with tarfile.open(path, "w:gz") as tf:
			_add_bytes(tf, f"{name}-{version}/build.py", script.encode("utf-8"))
			_add_bytes(tf, f"{name}-{version}/README", b"source\n")
		return path

	return _make


def sha256_of(path: Path) -> str:
	return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture
def manifest_dict() -> Callable[..., dict[str, Any]]:
	"""Manifest JSON for an archive built by `make_archive`."""

	def _make(archive: Path, *, version: str = "1.0.1", name: str = "tool", **overrides: Any) -> dict[str, Any]:
		obj: dict[str, Any] = {
			"name": name,
			"desc": "test tool",
			"homepage": "https://example.invalid/tool",
			"version": version,
			# as_uri() would percent-encode the braces, so append the template part by hand.
			"source_url_template": archive.parent.as_uri() + f"/{name}-{{version}}.tar.gz",
			"checksum": f"sha256:{sha256_of(archive)}",
			"license": "MIT",
			"build_command": [sys.executable, "build.py", "{prefix}"],
			"post_install_checks": [
				{"kind": "exists", "target": "bin/{name}"},
				{"kind": "executable", "target": "bin/{name}"},
			],
		}
		obj.update(overrides)
		return obj

	return _make


@pytest.fixture
def write_json(tmp_path: Path) -> Callable[[str, Any], Path]:
	def _write(rel: str, obj: Any) -> Path:
		path = tmp_path / rel
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(json.dumps(obj, indent=2), encoding="utf-8")
		return path

	return _write
