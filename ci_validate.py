#!/usr/bin/env python3
"""CI validation script for safex.

This script validates:
1. All Python tools compile successfully
2. The config schema is valid Draft 2020-12
3. Every detectable format has an extraction handler
4. The extract CLI round-trips a sample archive in every format
5. Adversarial-archive invariants hold (scripts/eval_invariants.py)

Usage:
    python ci_validate.py                    # Run all validations
    python ci_validate.py --verbose          # Show detailed output
    python ci_validate.py --schema-only      # Only validate the config schema

Exit codes:
    0 = All validations passed
    1 = One or more validations failed
    2 = Script error
"""

from __future__ import annotations

import argparse
import bz2
import gzip
import io
import json
import lzma
import pathlib
import re
import subprocess
import sys
import tarfile
import tempfile
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import zstandard

# =============================================================================
# Configuration
# =============================================================================

SCRIPT_DIR = pathlib.Path(__file__).parent.resolve()

PYTHON_TOOLS = [
    "safex.py",
    "safex_cleanup.py",
    "safex_config.py",
    "safex_copy.py",
    "safex_detect.py",
    "safex_digest.py",
    "safex_entries.py",
    "safex_errors.py",
    "safex_extract.py",
    "safex_logging.py",
    "safex_paths.py",
    "safex_tar.py",
    "safex_units.py",
    "safex_zip.py",
]

INVARIANTS_SCRIPT = SCRIPT_DIR / "scripts" / "eval_invariants.py"

# Suffix -> compressor for the sample tar archive
SAMPLE_COMPRESSORS: Dict[str, Callable[[bytes], bytes]] = {
    ".tar": lambda data: data,
    ".tar.gz": gzip.compress,
    ".tar.bz2": bz2.compress,
    ".tar.xz": lzma.compress,
    ".tar.zst": lambda data: zstandard.ZstdCompressor().compress(data),
}


# =============================================================================
# Validation result tracking
# =============================================================================


@dataclass
class ValidationResult:
    name: str
    passed: bool
    message: str
    details: Optional[str] = None


class ValidationReport:
    def __init__(self):
        self.results: List[ValidationResult] = []

    def add(self, name: str, passed: bool, message: str, details: Optional[str] = None):
        self.results.append(ValidationResult(name, passed, message, details))

    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    def print_report(self, verbose: bool = False):
        print("\n" + "=" * 70)
        print("SAFEX CI VALIDATION REPORT")
        print("=" * 70)

        passed = [r for r in self.results if r.passed]
        failed = [r for r in self.results if not r.passed]

        if failed:
            print(f"\n❌ FAILED ({len(failed)}):\n")
            for r in failed:
                print(f"  • {r.name}: {r.message}")
                if r.details:
                    for line in r.details.split("\n"):
                        print(f"      {line}")

        if verbose and passed:
            print(f"\n✅ PASSED ({len(passed)}):\n")
            for r in passed:
                print(f"  • {r.name}: {r.message}")

        print("\n" + "-" * 70)
        if self.passed():
            print(f"RESULT: ✅ ALL {len(self.results)} VALIDATIONS PASSED")
        else:
            print(f"RESULT: ❌ {len(failed)}/{len(self.results)} VALIDATIONS FAILED")
        print("-" * 70 + "\n")


# =============================================================================
# Validation functions
# =============================================================================


def validate_python_compilation(report: ValidationReport):
    """Validate all Python tools compile without syntax errors."""
    for tool in PYTHON_TOOLS:
        tool_path = SCRIPT_DIR / tool
        if not tool_path.exists():
            report.add(f"compile:{tool}", False, f"File not found: {tool}")
            continue

        result = subprocess.run(
            [sys.executable, "-m", "py_compile", str(tool_path)],
            capture_output=True,
            text=True,
        )

        if result.returncode == 0:
            report.add(f"compile:{tool}", True, "Compiles successfully")
        else:
            report.add(
                f"compile:{tool}",
                False,
                "Compilation failed",
                result.stderr.strip(),
            )


def validate_config_schema(report: ValidationReport):
    """Validate the embedded config schema is valid Draft 2020-12."""
    from jsonschema import Draft202012Validator

    sys.path.insert(0, str(SCRIPT_DIR))
    import safex_config

    try:
        Draft202012Validator.check_schema(safex_config.CONFIG_SCHEMA)
        report.add("schema:config", True, "Valid Draft 2020-12 schema")
    except Exception as e:
        report.add("schema:config", False, "Schema validation failed", str(e))


def validate_format_dispatch(report: ValidationReport):
    """Validate every detectable format has a branch in the extraction dispatcher."""
    detect_content = (SCRIPT_DIR / "safex_detect.py").read_text(encoding="utf-8")
    extract_content = (SCRIPT_DIR / "safex_extract.py").read_text(encoding="utf-8")

    detected = set(re.findall(r"ArchiveFormat\.([A-Z0-9]+)\)", detect_content))
    dispatched = set(re.findall(r"archive_format is ArchiveFormat\.([A-Z0-9]+):", extract_content))

    missing = detected - dispatched
    if missing:
        report.add(
            "consistency:dispatch",
            False,
            "Detected formats without an extractor",
            ", ".join(sorted(missing)),
        )
    else:
        report.add(
            "consistency:dispatch",
            True,
            f"All {len(detected)} detected formats dispatched",
        )


def _sample_tar() -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        for name, data in (("sample/README", b"safex\n"), ("sample/bin/run", b"#!/bin/sh\n")):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if name.endswith("run") else 0o644
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def validate_extract_roundtrip(report: ValidationReport):
    """Validate the extract CLI on a small archive in every supported tar encoding."""
    payload = _sample_tar()

    for suffix, compress in SAMPLE_COMPRESSORS.items():
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp_path = pathlib.Path(tmpdir)
            archive = tmp_path / f"sample{suffix}"
            archive.write_bytes(compress(payload))

            cmd = [
                sys.executable,
                str(SCRIPT_DIR / "safex_extract.py"),
                str(archive),
                "-C",
                str(tmp_path / "out"),
                "--create-directory",
                "--strip-components",
                "1",
                "--json",
                "--quiet",
            ]
            result = subprocess.run(cmd, capture_output=True, text=True)

            if result.returncode != 0:
                report.add(
                    f"roundtrip:{suffix}",
                    False,
                    f"Extraction failed (exit {result.returncode})",
                    result.stderr.strip(),
                )
                continue

            try:
                output = json.loads(result.stdout)
            except json.JSONDecodeError:
                report.add(f"roundtrip:{suffix}", False, "CLI output invalid", result.stdout[:500])
                continue

            readme = tmp_path / "out" / "README"
            if output.get("entries") == 2 and readme.read_bytes() == b"safex\n":
                report.add(f"roundtrip:{suffix}", True, f"Extracted as {output['format']}")
            else:
                report.add(f"roundtrip:{suffix}", False, "Unexpected extraction result", result.stdout)


def validate_invariants(report: ValidationReport):
    """Run the adversarial-archive invariant suite."""
    result = subprocess.run(
        [sys.executable, str(INVARIANTS_SCRIPT)], capture_output=True, text=True
    )

    try:
        summary = json.loads(result.stdout)
    except json.JSONDecodeError:
        report.add("invariants", False, "Invariant script output invalid", result.stderr.strip())
        return

    for check in summary.get("checks", []):
        report.add(f"invariant:{check['id']}", check["passed"], check["details"])


# =============================================================================
# Main
# =============================================================================


def main() -> int:
    parser = argparse.ArgumentParser(description="safex CI validation")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--schema-only", action="store_true", help="Only validate the config schema")
    args = parser.parse_args()

    report = ValidationReport()

    print("Running safex CI validations...")

    # Always validate compilation and the schema
    validate_python_compilation(report)
    validate_config_schema(report)

    if not args.schema_only:
        validate_format_dispatch(report)
        validate_extract_roundtrip(report)
        validate_invariants(report)

    report.print_report(verbose=args.verbose)

    return 0 if report.passed() else 1


if __name__ == "__main__":
    sys.exit(main())
