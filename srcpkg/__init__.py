# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
srcpkg: build-from-source package installer.

Pipeline stages:
  manifest: load and validate a formula (catalog.py, manifest.py)
  fetch: download the source archive into private staging (fetch.py)
  verify: check the archive digest against the formula (verify.py)
  build: unpack, run the build toolchain, install into the prefix (build.py)
  validate: run post-install checks (validate.py)
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
