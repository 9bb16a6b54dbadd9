"""Reverse-engineering hints.

RE hints fold the anomaly catalog and a few side signals (section names,
byte-signature matches, resources, imports, PDB path) into analyst-facing
advice such as "this is UPX packed, run upx -d".

Rules are independent: a file can be both an installer and packed. Every
satisfied rule adds one reason string to its hint type; reasons are
de-duplicated by exact text and hints come out in :class:`ReHintType` order.

The lookups all rules share (import names, section names, signatures per
location, anomaly sub types) are computed once in :class:`HintContext`.

@QK
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .anomalies import Anomaly, AnomalySubType, AnomalySuperType
from .modules.signals import ImportedSymbol, ResourceSignal, ScanLocation, SignatureMatch

logger = logging.getLogger(__name__)


class ReHintType(enum.Enum):
    """Hint kinds; each is backed by an RE-hint anomaly sub type holding its description."""

    AHK = AnomalySubType.AHK_RE_HINT
    ARCHIVE = AnomalySubType.ARCHIVE_RE_HINT
    AUTOIT = AnomalySubType.AUTOIT_RE_HINT
    COMPRESSOR_PACKER = AnomalySubType.COMPRESSOR_PACKER_RE_HINT
    DOT_NET_CORE_APP_BUNDLE = AnomalySubType.DOT_NET_CORE_APP_BUNDLE_RE_HINT
    ELECTRON_PACKAGE = AnomalySubType.ELECTRON_PACKAGE_RE_HINT
    EMBEDDED_EXE = AnomalySubType.EMBEDDED_EXE_RE_HINT
    FAKE_VMP = AnomalySubType.FAKE_VMP_RE_HINT
    INNO_SETUP = AnomalySubType.INNO_SETUP_RE_HINT
    INSTALLER = AnomalySubType.INSTALLER_RE_HINT
    NATIVE_DOT_NET_UNPACKING = AnomalySubType.NATIVE_DOT_NET_UNPACKING_RE_HINT
    NULLSOFT_INSTALLER = AnomalySubType.NULLSOFT_INSTALLER_RE_HINT
    PROCESS_DOPPELGANGING = AnomalySubType.PROCESS_DOPPELGANGING_RE_HINT
    PYINSTALLER = AnomalySubType.PYINSTALLER_RE_HINT
    SCRIPT_TO_EXE_WRAPPED = AnomalySubType.SCRIPT_TO_EXE_WRAPPED_RE_HINT
    SELF_EXTRACTING_ARCHIVE = AnomalySubType.SELF_EXTRACTING_ARCHIVE_RE_HINT
    SFX_7ZIP_OLEG = AnomalySubType.SFX_7ZIP_OLEG_RE_HINT
    THREAD_NAME_INJECTION = AnomalySubType.THREAD_NAME_INJECTION_RE_HINT
    UPX_PACKER = AnomalySubType.UPX_PACKER_RE_HINT

    @property
    def description(self) -> str:
        return self.value.description


@dataclass(frozen=True)
class ReHint:
    hint_type: ReHintType
    reasons: Tuple[str, ...]

    def to_anomaly(self) -> Anomaly:
        """Express the hint as an RE_HINT anomaly."""
        text = self.hint_type.description
        if self.reasons:
            text = f"{text} Reasons: {'; '.join(self.reasons)}"
        return Anomaly(self.hint_type.value, text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.hint_type.name,
            "description": self.hint_type.description,
            "reasons": list(self.reasons),
        }


ImportLike = Union[ImportedSymbol, str]


@dataclass(frozen=True)
class ReHintSignals:
    """Externally supplied inputs for the hint rules."""

    signatures: Tuple[SignatureMatch, ...] = ()
    section_names: Tuple[str, ...] = ()
    resources: Tuple[ResourceSignal, ...] = ()
    imports: Tuple[ImportLike, ...] = ()
    pdb_path: Optional[str] = None
    has_clr_header: bool = False
    overlay_head: bytes = b""

    def __post_init__(self) -> None:
        for name in ("signatures", "section_names", "resources", "imports"):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))


class HintContext:
    """Lookups shared by every rule, computed once per file."""

    def __init__(self, signals: ReHintSignals, anomalies: Iterable[Anomaly]) -> None:
        self.signals = signals
        self.section_names: Tuple[str, ...] = signals.section_names

        names: Dict[str, str] = {}
        for imp in signals.imports:
            raw = imp if isinstance(imp, str) else imp.name
            if raw:
                names.setdefault(raw.lower(), raw)
        self._imports: Mapping[str, str] = names

        by_loc: Dict[ScanLocation, List[SignatureMatch]] = {loc: [] for loc in ScanLocation}
        for m in signals.signatures:
            by_loc[m.location].append(m)
        self.signatures: Mapping[ScanLocation, Tuple[SignatureMatch, ...]] = {
            loc: tuple(v) for loc, v in by_loc.items()
        }

        self.anomaly_types: FrozenSet[AnomalySubType] = frozenset(a.sub_type for a in anomalies)

    def imported(self, name: str) -> Optional[str]:
        """Return the imported spelling of *name* (case-insensitive), if imported."""
        return self._imports.get(name.lower())

    def pdb_file_name(self) -> Optional[str]:
        if not self.signals.pdb_path:
            return None
        return self.signals.pdb_path.replace("\\", "/").rsplit("/", 1)[-1]


Finding = Tuple[ReHintType, str]
H = ReHintType


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

_EXACT_SECTION_NAMES: Dict[str, Tuple[ReHintType, ...]] = {
    ".ndata": (H.NULLSOFT_INSTALLER,),
    "CPADinfo": (H.ELECTRON_PACKAGE,),
    ".vmp0": (H.FAKE_VMP,),
    ".vmp1": (H.FAKE_VMP,),
    ".vmp2": (H.FAKE_VMP,),
    "_winzip_": (H.SELF_EXTRACTING_ARCHIVE,),
}

_PREFIX_SECTION_NAMES: Tuple[Tuple[str, ReHintType], ...] = (("UPX", H.UPX_PACKER),)


def rule_section_names(ctx: HintContext) -> Iterator[Finding]:
    for name in ctx.section_names:
        for hint in _EXACT_SECTION_NAMES.get(name, ()):
            yield hint, f"Section name '{name}'"
        for prefix, hint in _PREFIX_SECTION_NAMES:
            if name.startswith(prefix):
                yield hint, f"Section name '{name}'"


# Lower-case substring of a signature name -> hints it implies.
_SIGNATURE_HINTS: Tuple[Tuple[str, Tuple[ReHintType, ...]], ...] = (
    ("upx", (H.UPX_PACKER,)),
    ("nsis", (H.NULLSOFT_INSTALLER,)),
    ("nullsoft", (H.NULLSOFT_INSTALLER,)),
    ("inno setup", (H.INNO_SETUP,)),
    ("pyinstaller", (H.PYINSTALLER, H.ARCHIVE)),
    ("autoit", (H.AUTOIT,)),
    ("autohotkey", (H.AHK,)),
    ("oleg", (H.SFX_7ZIP_OLEG,)),
    ("7-zip installer", (H.INSTALLER,)),
    ("sfx", (H.SELF_EXTRACTING_ARCHIVE,)),
    ("installer", (H.INSTALLER,)),
    ("archive", (H.ARCHIVE,)),
    (".net core bundle", (H.DOT_NET_CORE_APP_BUNDLE,)),
    ("compressor", (H.COMPRESSOR_PACKER,)),
)


def _signature_reason(match: SignatureMatch) -> str:
    if match.location is ScanLocation.ENTRY_POINT:
        return f"Signature for {match.name} matches at entry point"
    if match.location is ScanLocation.MSDOS_STUB:
        return f"MSDOS stub has signature [{match.name}] at offset 0x{match.offset:x}"
    return f"{match.location.label} has signature [{match.name}]"


def rule_signatures(ctx: HintContext) -> Iterator[Finding]:
    for loc in ScanLocation:
        for match in ctx.signatures[loc]:
            lowered = match.name.lower()
            for needle, hints in _SIGNATURE_HINTS:
                if needle in lowered:
                    for hint in hints:
                        yield hint, _signature_reason(match)


_RESOURCE_NAMES: Dict[str, ReHintType] = {
    ">AUTOHOTKEY SCRIPT<": H.AHK,
    "SCRIPT": H.AUTOIT,
}


def rule_resources(ctx: HintContext) -> Iterator[Finding]:
    for res in ctx.signals.resources:
        hint = _RESOURCE_NAMES.get(res.name)
        if hint is not None:
            yield hint, f"Resource named {res.name} in resource 0x{res.offset:x}"
        if res.head.startswith(b"MZ"):
            yield (
                H.EMBEDDED_EXE,
                f"Resource named {res.name} in resource 0x{res.offset:x} is an executable (MS-DOS or Portable Executable)",
            )
    if ctx.signals.overlay_head.startswith(b"MZ"):
        yield H.EMBEDDED_EXE, "Overlay is an executable (MS-DOS or Portable Executable)"


_SCRIPT_TO_EXE_MARKER = b"\x01\x01\x00\x00\x00\x00"


def rule_script_to_exe(ctx: HintContext) -> Iterator[Finding]:
    purebasic = [m for m in ctx.signatures[ScanLocation.ENTRY_POINT] if "purebasic" in m.name.lower()]
    markers = [r for r in ctx.signals.resources if r.size == 6 and r.head[:6] == _SCRIPT_TO_EXE_MARKER]
    if not (purebasic and markers):
        return
    for m in purebasic:
        yield H.SCRIPT_TO_EXE_WRAPPED, _signature_reason(m)
    for r in markers:
        shown = " ".join(f"0x{b:02x}" for b in _SCRIPT_TO_EXE_MARKER)
        yield (
            H.SCRIPT_TO_EXE_WRAPPED,
            f"Resource {r.name} at 0x{r.offset:x} has size 6 and bytes {shown} which is a sign of a "
            "Script-to-Exe converter",
        )


_PDB_NAMES: Dict[str, ReHintType] = {
    "electron.exe.pdb": H.ELECTRON_PACKAGE,
    "apphost.pdb": H.DOT_NET_CORE_APP_BUNDLE,
}


def rule_pdb_path(ctx: HintContext) -> Iterator[Finding]:
    name = ctx.pdb_file_name()
    if name is None:
        return
    hint = _PDB_NAMES.get(name.lower())
    if hint is not None:
        yield hint, f"PDB path is '{name}'"


_THREAD_NAME_APIS = ("GetThreadDescription", "SetThreadDescription")

# Every group needs at least one import for Process Doppelgänging.
_DOPPELGANGING_GROUPS: Tuple[Tuple[str, ...], ...] = (
    ("CreateTransaction", "NtCreateTransaction", "ZwCreateTransaction"),
    ("NtCreateSection", "ZwCreateSection"),
    ("NtCreateProcessEx", "ZwCreateProcessEx"),
)

_CLR_HOSTING_APIS = ("CLRCreateInstance", "CorBindToRuntimeEx", "CorBindToRuntime", "CorBindToRuntimeHost")


def rule_imports(ctx: HintContext) -> Iterator[Finding]:
    thread_name = [ctx.imported(api) for api in _THREAD_NAME_APIS]
    if all(thread_name):
        for api in thread_name:
            yield H.THREAD_NAME_INJECTION, f"{api} can be used to inject shellcode"

    groups = []
    for group in _DOPPELGANGING_GROUPS:
        found = [ctx.imported(api) for api in group if ctx.imported(api)]
        if not found:
            break
        groups.append(found[0])
    else:
        yield H.PROCESS_DOPPELGANGING, f"Imports {', '.join(groups)} are used for Process Doppelgänging"

    if not ctx.signals.has_clr_header:
        for api in _CLR_HOSTING_APIS:
            got = ctx.imported(api)
            if got:
                yield H.NATIVE_DOT_NET_UNPACKING, f"Native executable imports {got} to host the .NET runtime"


def rule_anomalies(ctx: HintContext) -> Iterator[Finding]:
    if {AnomalySubType.EP_IN_WRITEABLE_SEC, AnomalySubType.EP_IN_LAST_SECTION} <= ctx.anomaly_types:
        yield H.COMPRESSOR_PACKER, "Entry point is in the last section, which is writeable"


RULES: Tuple[Tuple[str, Callable[[HintContext], Iterable[Finding]]], ...] = (
    ("section_names", rule_section_names),
    ("signatures", rule_signatures),
    ("resources", rule_resources),
    ("script_to_exe", rule_script_to_exe),
    ("pdb_path", rule_pdb_path),
    ("imports", rule_imports),
    ("anomalies", rule_anomalies),
)


def scan_re_hints(anomalies: Sequence[Anomaly], signals: Optional[ReHintSignals] = None) -> List[ReHint]:
    """Evaluate every rule and group the reasons per hint type."""

    ctx = HintContext(signals or ReHintSignals(), [a for a in anomalies if a.super_type is not AnomalySuperType.RE_HINT])
    reasons: Dict[ReHintType, List[str]] = {}
    for name, rule in RULES:
        for hint, reason in rule(ctx):
            bucket = reasons.setdefault(hint, [])
            if reason not in bucket:
                bucket.append(reason)
        logger.debug("RE-hint rule %s evaluated", name)

    return [ReHint(h, tuple(reasons[h])) for h in ReHintType if h in reasons]
