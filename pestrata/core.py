"""PEStrata analysis engine.

This module ties the structural layers together:

- :class:`PEImage` is the per-file facade. It owns the decoded headers, the
  section model and the resolved data directories, and exposes address
  translation, overlay, directory lookup, anomaly and RE-hint scanning.
- :class:`PEStrataAnalyzer` turns one target file into a report dict.

Design goals:
- **Deterministic output**: stable keys and stable anomaly order.
- **Malformed input is the normal case**: only files that are not PE at all
  (:class:`NotPEFileError`) abort; everything else becomes anomalies.
- **Optional collaborators are isolated**: signal collection and signature
  scanning failures are recorded as ``*_error`` fields.

The top-level report schema:

- tool: {name, version}
- target: {path, size, type, hashes}
- pe: basic header summary
- analysis: sections, directories, overlay, anomalies, rehints, signatures
- score: {value, level, breakdown}
- timing: {seconds}

@QK
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from functools import cached_property
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import __version__
from .anomalies import Anomaly, build_context, scan_anomalies
from .modules import address, signatures
from .modules.directories import DataDirectoryKey, DataDirectoryTable, ResolvedDataDirEntry, read_raw_entries
from .modules.headers import (
    HeaderKey,
    NotPEFileError,
    PEHeaders,
    RichHeader,
    headers_from_pefile,
    rich_header_from_pefile,
)
from .modules.sections import SectionModel, load_section_model
from .modules.signals import (
    ImportDescriptor,
    ImportedSymbol,
    SignatureMatch,
    collect_import_descriptors,
    collect_imports,
    collect_pdb_path,
    collect_resources,
)
from .paths import DEFAULT_CONFIG_PATH, DEFAULT_SIGNATURES_DIR
from .rehints import ReHint, ReHintSignals, scan_re_hints
from .scoring import attach_score
from .utils import file_size, file_type, hashes, is_file, load_pe, pe_basic_info, read_file

logger = logging.getLogger(__name__)

OVERLAY_HEAD_SIZE = 16


class PEImage:
    """Structural view of one PE file.

    All values are computed once at construction and never mutated. The
    facade methods are total over malformed data; only asking for a
    directory with something that is not a :class:`DataDirectoryKey` raises.
    """

    def __init__(
        self,
        headers: PEHeaders,
        model: SectionModel,
        directories: DataDirectoryTable,
        *,
        data: bytes = b"",
        imports: Optional[Sequence[ImportedSymbol]] = None,
        import_descriptors: Sequence[ImportDescriptor] = (),
        rich_header: Optional[RichHeader] = None,
        pe=None,
    ) -> None:
        self.headers = headers
        self.model = model
        self.directories = directories
        self.data = data
        self.imports = tuple(imports) if imports is not None else None
        self.import_descriptors = tuple(import_descriptors)
        self.rich_header = rich_header
        self.pe = pe

    @classmethod
    def from_bytes(cls, data: bytes) -> "PEImage":
        """Decode *data*; raises :class:`NotPEFileError` if it is not a PE."""
        pe = load_pe(data)
        headers = headers_from_pefile(pe)
        model = load_section_model(data, headers)
        nr = headers.get(HeaderKey.NUMBER_OF_RVA_AND_SIZES)
        raw = read_raw_entries(data, headers.optional_header_offset, headers.magic, nr)
        directories = DataDirectoryTable.from_raw(raw, model, declared_count=nr)
        try:
            imports: Optional[List[ImportedSymbol]] = collect_imports(pe)
            descriptors = collect_import_descriptors(pe)
        except Exception as e:
            logger.warning("Import collection failed: %s", e)
            imports, descriptors = None, []
        try:
            rich = rich_header_from_pefile(pe, data)
        except Exception as e:
            logger.warning("Rich header decoding failed: %s", e)
            rich = None
        return cls(
            headers,
            model,
            directories,
            data=data,
            imports=imports,
            import_descriptors=descriptors,
            rich_header=rich,
            pe=pe,
        )

    @classmethod
    def load(cls, path: str) -> "PEImage":
        return cls.from_bytes(read_file(path))

    @property
    def file_length(self) -> int:
        return self.model.file_length

    # ---- address translation ----

    def resolve_rva(self, rva: int) -> Optional[int]:
        return address.rva_to_file_offset(self.model, rva)

    def resolve_file_offset(self, offset: int) -> Optional[int]:
        return address.file_offset_to_rva(self.model, offset)

    @cached_property
    def _overlay_offset(self) -> int:
        return address.overlay_offset(self.model)

    def overlay_offset(self) -> int:
        return self._overlay_offset

    def overlay_size(self) -> int:
        return self.file_length - self._overlay_offset

    def overlay_exists(self) -> bool:
        return self.overlay_size() > 0

    def resolve_data_directory(self, key: DataDirectoryKey) -> Optional[ResolvedDataDirEntry]:
        return self.directories.get(key)

    # ---- findings ----

    def scan_anomalies(
        self,
        rules: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
        external: Iterable[Anomaly] = (),
    ) -> List[Anomaly]:
        ctx = build_context(
            self.headers,
            self.model,
            self.directories,
            imports=self.imports,
            rules=rules,
            now=now,
            external=external,
            rich_header=self.rich_header,
            import_descriptors=self.import_descriptors,
        )
        return scan_anomalies(ctx, rules)

    def collect_signals(self, matches: Iterable[SignatureMatch] = ()) -> ReHintSignals:
        """Gather RE-hint inputs from this file plus externally found *matches*."""
        resources = collect_resources(self.pe) if self.pe is not None else []
        pdb = collect_pdb_path(self.pe) if self.pe is not None else None
        ov = self.overlay_offset()
        return ReHintSignals(
            signatures=tuple(matches),
            section_names=tuple(s.display_name for s in self.model),
            resources=tuple(resources),
            imports=self.imports or (),
            pdb_path=pdb,
            has_clr_header=DataDirectoryKey.CLR_RUNTIME_HEADER in self.directories,
            overlay_head=self.data[ov : ov + OVERLAY_HEAD_SIZE],
        )

    def scan_re_hints(
        self,
        signals: Optional[ReHintSignals] = None,
        anomalies: Optional[Sequence[Anomaly]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[ReHint]:
        if anomalies is None:
            anomalies = self.scan_anomalies(now=now)
        if signals is None:
            signals = self.collect_signals()
        return scan_re_hints(anomalies, signals)


class PEStrataAnalyzer:
    """Analysis engine producing one report dict per target.

    The analyzer is stateless per target. The JSON config, the compiled
    signature rules and the reference time for timestamp checks are fixed
    once so batch scans neither reload them nor drift.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        signatures_dir: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.config_path = str(config_path or DEFAULT_CONFIG_PATH)
        self.signatures_dir = str(signatures_dir or DEFAULT_SIGNATURES_DIR)
        # Reference time for timestamp checks, fixed for the analyzer's lifetime.
        self.now = now or datetime.now(timezone.utc)

        self._config_cache: Optional[Dict[str, Any]] = None
        self._signature_rules: Optional[Dict[Any, Any]] = None

    # ---------------------------------------------------------------------
    # Config loading
    # ---------------------------------------------------------------------

    def _load_config(self) -> Dict[str, Any]:
        """Load the config JSON (cached).

        The config file is optional. If it is missing or invalid, built-in
        defaults apply.
        """

        if self._config_cache is not None:
            return self._config_cache

        cfg: Dict[str, Any] = {}
        try:
            with open(self.config_path, "r", encoding="utf-8", errors="ignore") as f:
                cfg = json.load(f) or {}
        except (OSError, ValueError) as e:
            logger.warning("Could not load config %s (%s), using defaults", self.config_path, e)
            cfg = {}

        self._config_cache = cfg if isinstance(cfg, dict) else {}
        return self._config_cache

    def _rules(self) -> Dict[str, Any]:
        """Return the rules section of the config (or an empty dict)."""
        cfg = self._load_config()

        # Support both `{ "rules": {...} }` and plain `{...}` rule files.
        rules = cfg.get("rules")
        return rules if isinstance(rules, dict) else cfg

    def _section(self, name: str) -> Optional[Dict[str, Any]]:
        sec = self._rules().get(name)
        return sec if isinstance(sec, dict) else None

    def _compiled_signatures(self) -> Dict[Any, Any]:
        if self._signature_rules is None:
            self._signature_rules = signatures.compile_rules(self.signatures_dir)
        return self._signature_rules

    # ---------------------------------------------------------------------
    # Analysis
    # ---------------------------------------------------------------------

    def analyze(self, path: str, *, include_signatures: bool = True) -> Dict[str, Any]:
        """Analyze a single file and return a structured report dict.

        Raises ``FileNotFoundError`` for missing targets and
        :class:`NotPEFileError` for files that are not PE files.
        """

        if not is_file(path):
            raise FileNotFoundError(path)

        t0 = time.time()
        data = read_file(path)

        report: Dict[str, Any] = {
            "tool": {"name": "PEStrata", "version": __version__},
            "target": {
                "path": os.path.abspath(path),
                "size": file_size(path),
                "type": file_type(path),
                "hashes": hashes(data),
            },
            "pe": {},
            "analysis": {},
        }

        image = PEImage.from_bytes(data)
        report["pe"] = pe_basic_info(image.pe)
        report["pe"]["headers"] = image.headers.as_dict()

        analysis = report["analysis"]
        analysis["sections"] = image.model.to_dict()
        analysis["directories"] = image.directories.to_dict()
        analysis["overlay"] = {
            "offset": image.overlay_offset(),
            "size": image.overlay_size(),
            "exists": image.overlay_exists(),
        }

        anomalies = image.scan_anomalies(self._section("anomalies"), now=self.now)
        analysis["anomalies"] = [a.to_dict() for a in anomalies]

        # Signature scanning is optional: a missing yara-python or broken rule
        # file becomes an error field.
        matches: List[SignatureMatch] = []
        if include_signatures:
            try:
                matches = signatures.scan(data, image.headers, image.model, self._compiled_signatures())
                analysis["signatures"] = [m.to_dict() for m in matches]
            except Exception as e:
                logger.warning("Signature scan failed for %s: %s", path, e)
                analysis["signatures_error"] = str(e)

        try:
            signals = image.collect_signals(matches)
        except Exception as e:
            logger.warning("Signal collection failed for %s: %s", path, e)
            analysis["signals_error"] = str(e)
            signals = ReHintSignals(
                signatures=tuple(matches),
                section_names=tuple(s.display_name for s in image.model),
            )

        rehints = scan_re_hints(anomalies, signals)
        analysis["rehints"] = [h.to_dict() for h in rehints]

        attach_score(report, scoring_rules=self._section("scoring"))

        report["timing"] = {"seconds": round(time.time() - t0, 4)}
        return report


def error_report(path: str, error: Exception) -> Dict[str, Any]:
    """Per-target error entry for batch output."""
    return {
        "tool": {"name": "PEStrata", "version": __version__},
        "target": {"path": os.path.abspath(path)},
        "error": str(error),
        "error_type": "not_pe" if isinstance(error, NotPEFileError) else type(error).__name__,
    }


def analyze_path(
    path: str,
    config_path: Optional[str] = None,
    signatures_dir: Optional[str] = None,
    include_signatures: bool = True,
) -> Dict[str, Any]:
    """Analyze one target with a fresh analyzer; errors become an error report.

    Module-level so it can be shipped to worker processes.
    """
    engine = PEStrataAnalyzer(config_path=config_path, signatures_dir=signatures_dir)
    try:
        return engine.analyze(path, include_signatures=include_signatures)
    except Exception as e:
        logger.error("Analysis of %s failed: %s", path, e)
        return error_report(path, e)
