"""Core pipeline for deckfill."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .binder import bind_unit, build_context
from .capacity import (
    DEFAULT_ITEMS_PER_PAGE_CEILING,
    DEFAULT_MAX_PAGES_FROM_TEMPLATE,
    CapacityPlan,
    estimate_capacity,
    make_batch,
)
from .deck_html import load_deck, save_deck
from .evaluator import DefaultEvaluator, Evaluator
from .model import ContentUnit, Document
from .remap import guard_unit, remap_unit
from .replicator import Replica, replicate_unit
from .scanner import group_by_collection, scan_unit

LOG = logging.getLogger("deckfill")

EXIT_INVALID_ARGS = 6
EXIT_OUTPUT = 7
EXIT_PARTIAL = 9

TEST_MODE_ENV = "DECKFILL_TEST_MODE"
TEST_NOW = datetime(2024, 1, 15, 9, 30, 0)

CONFIG_KEYS = ("items_per_page_ceiling", "max_pages_from_template", "register_globals")


@dataclass
class BindingConfig:
    items_per_page_ceiling: int = DEFAULT_ITEMS_PER_PAGE_CEILING
    max_pages_from_template: int = DEFAULT_MAX_PAGES_FROM_TEMPLATE
    register_globals: bool = True
    verbose: bool = False
    debug: bool = False


class UnitState(str, Enum):
    TEMPLATE = "TEMPLATE"
    SCANNED = "SCANNED"
    NO_REPLICATION = "NO_REPLICATION"
    SIZED = "SIZED"
    REPLICATED = "REPLICATED"
    REMAPPED = "REMAPPED"
    GUARDED = "GUARDED"
    BOUND = "BOUND"
    DONE = "DONE"
    PARTIAL = "PARTIAL"


@dataclass
class UnitReport:
    unit_id: int
    name: str
    states: List[UnitState] = field(default_factory=list)
    pages: int = 1
    replica_ids: List[int] = field(default_factory=list)
    plans: Dict[str, CapacityPlan] = field(default_factory=dict)
    hidden_elements: int = 0
    bound_elements: int = 0
    aborted: bool = False
    faults: List[str] = field(default_factory=list)

    @property
    def state(self) -> UnitState:
        return self.states[-1] if self.states else UnitState.TEMPLATE

    @property
    def clamped(self) -> bool:
        return any(plan.clamped for plan in self.plans.values())

    @property
    def truncated(self) -> bool:
        return any(plan.truncated for plan in self.plans.values())

    def enter(self, state: UnitState) -> None:
        LOG.debug("%s: %s", self.name, state.value)
        self.states.append(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "name": self.name,
            "state": self.state.value,
            "states": [s.value for s in self.states],
            "pages": self.pages,
            "replica_ids": list(self.replica_ids),
            "plans": {name: plan.to_dict() for name, plan in self.plans.items()},
            "clamped": self.clamped,
            "truncated": self.truncated,
            "aborted": self.aborted,
            "hidden_elements": self.hidden_elements,
            "bound_elements": self.bound_elements,
            "faults": list(self.faults),
        }


@dataclass
class DocumentReport:
    units: List[UnitReport] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return any(u.state == UnitState.PARTIAL for u in self.units)

    @property
    def truncated(self) -> bool:
        return any(u.truncated for u in self.units)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partial": self.partial,
            "truncated": self.truncated,
            "units": [u.to_dict() for u in self.units],
        }


def _env_flag_enabled(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "off", "no"}


def is_test_mode() -> bool:
    env_flag = os.environ.get(TEST_MODE_ENV)
    if env_flag is not None:
        return _env_flag_enabled(env_flag)
    return bool(os.environ.get("PYTEST_CURRENT_TEST"))


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_deckfill_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_deckfill_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = int((clamped / total) * width)
    filled = min(filled, width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def load_config_file(path: Path) -> Dict[str, Any]:
    try:
        data_raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"Unable to read config file {path}: {exc}") from exc
    if not isinstance(data_raw, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    unknown = sorted(set(data_raw) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(f"Config file {path} has unknown key(s): {', '.join(unknown)}")

    overrides: Dict[str, Any] = {}
    for key in ("items_per_page_ceiling", "max_pages_from_template"):
        if key not in data_raw:
            continue
        value = data_raw[key]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"Config file {path}: {key} must be a positive integer")
        overrides[key] = value
    if "register_globals" in data_raw:
        if not isinstance(data_raw["register_globals"], bool):
            raise ValueError(f"Config file {path}: register_globals must be true or false")
        overrides["register_globals"] = data_raw["register_globals"]
    return overrides


def normalize_data(data: Any) -> Dict[str, Any]:
    """Turn a mapping, dataclass or plain object into a name -> value dictionary."""
    if data is None:
        return {}
    if isinstance(data, Mapping):
        return {str(key): value for key, value in data.items()}
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        return {f.name: getattr(data, f.name) for f in dataclasses.fields(data)}
    try:
        attrs = vars(data)
    except TypeError as exc:
        raise ValueError(f"Unsupported data object: {type(data).__name__}") from exc
    return {key: value for key, value in attrs.items() if not key.startswith("_")}


def load_data_file(path: Path) -> Dict[str, Any]:
    try:
        data_raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"Unable to read data file {path}: {exc}") from exc
    if not isinstance(data_raw, dict):
        raise ValueError(f"Data file {path} must contain a JSON object at the top level")
    return data_raw


def resolve_collection(data: Mapping[str, Any], name: str) -> Optional[List[Any]]:
    """Return the collection bound to ``name`` (case-insensitive), or None when it is missing."""
    value: Any = None
    found = False
    if name in data:
        value, found = data[name], True
    else:
        lowered = name.lower()
        for key, candidate in data.items():
            if str(key).lower() == lowered:
                value, found = candidate, True
                break
    if not found:
        return None
    if isinstance(value, (list, tuple)):
        return list(value)
    LOG.debug("Data entry %s is not a sequence (%s); treated as missing", name, type(value).__name__)
    return None


def global_variables(now: Optional[datetime] = None) -> Dict[str, Callable[[], Any]]:
    def _now() -> datetime:
        if now is not None:
            return now
        return TEST_NOW if is_test_mode() else datetime.now()

    return {
        "Today": lambda: date(_now().year, _now().month, _now().day),
        "Now": _now,
        "Year": lambda: _now().year,
        "Month": lambda: _now().month,
        "Day": lambda: _now().day,
    }


def base_variables(data: Mapping[str, Any], config: BindingConfig) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    if config.register_globals:
        variables.update({name: factory() for name, factory in global_variables().items()})
    variables.update(data)
    return variables


def _plan_collections(
    grouped: Mapping[str, Sequence[Any]], data: Mapping[str, Any], config: BindingConfig
) -> Dict[str, CapacityPlan]:
    plans: Dict[str, CapacityPlan] = {}
    for name, refs in grouped.items():
        items = resolve_collection(data, name)
        if items is None:
            LOG.debug("Collection %s is not bound; treated as empty", name)
        plans[name] = estimate_capacity(
            name,
            refs,
            len(items or []),
            items_per_page_ceiling=config.items_per_page_ceiling,
            max_pages=config.max_pages_from_template,
        )
    return plans


def _run_stage(report: UnitReport, stage: str, page: Replica, action: Callable[[], Any]) -> Any:
    try:
        return action()
    except Exception as exc:
        message = f"{stage} failed on {page.unit.name}: {exc}"
        LOG.error(message)
        report.faults.append(message)
        return None


def process_unit(
    document: Document,
    unit: ContentUnit,
    data: Mapping[str, Any],
    config: Optional[BindingConfig] = None,
    evaluator: Optional[Evaluator] = None,
    variables: Optional[Mapping[str, Any]] = None,
) -> UnitReport:
    config = config or BindingConfig()
    evaluator = evaluator or DefaultEvaluator()
    variables = variables if variables is not None else base_variables(data, config)
    report = UnitReport(unit_id=unit.unit_id, name=unit.name)
    report.enter(UnitState.TEMPLATE)

    grouped = group_by_collection(found.reference for found in scan_unit(unit))
    report.enter(UnitState.SCANNED)
    report.plans = _plan_collections(grouped, data, config)
    collections = {name: resolve_collection(data, name) or [] for name in report.plans}
    page_count = max((plan.page_count for plan in report.plans.values()), default=1)

    if page_count <= 1:
        report.enter(UnitState.NO_REPLICATION)
        batches = {name: make_batch(0, plan.items_per_page, plan.length) for name, plan in report.plans.items()}
        report.bound_elements = bind_unit(unit, build_context(batches, collections, variables), evaluator)
        report.enter(UnitState.BOUND)
        report.enter(UnitState.DONE)
        return report

    report.enter(UnitState.SIZED)
    LOG.info("%s: %d page(s) for %s", unit.name, page_count, ", ".join(sorted(report.plans)))

    def _on_replica(current: int, total: int, replica: Replica) -> None:
        if config.verbose:
            _log_verbose_progress(f"Replicating {unit.name}", current, total, replica.unit.name)

    result = replicate_unit(document, unit, page_count, on_replica=_on_replica)
    report.aborted = result.aborted
    report.faults.extend(result.faults)
    pages: List[Replica] = [Replica(unit=unit, ordinal=0)] + result.replicas
    # Collections that fit on one page keep their first batch on every copy.
    ordered = sorted(report.plans.items(), key=lambda item: not item[1].replicate)
    for page in pages:
        page.batches = {
            name: plan.batch(page.ordinal if plan.replicate else 0) for name, plan in ordered
        }
    paged = {name for name, plan in report.plans.items() if plan.replicate}
    report.pages = len(pages)
    report.replica_ids = [replica.unit.unit_id for replica in result.replicas]
    report.enter(UnitState.REPLICATED)

    for page in pages:
        _run_stage(report, "remap", page, lambda page=page: remap_unit(page.unit, page.offsets))
    report.enter(UnitState.REMAPPED)

    for page in pages:
        guarded = _run_stage(
            report,
            "guard",
            page,
            lambda page=page: guard_unit(page.unit, {n: b for n, b in page.batches.items() if n in paged}),
        )
        if guarded is None:
            continue
        report.hidden_elements += len(guarded.hidden)
        if guarded.exposed:
            report.faults.append(f"{page.unit.name}: {len(guarded.exposed)} element(s) still expose out-of-range data")
    report.enter(UnitState.GUARDED)

    for page in pages:
        context = build_context(page.batches, collections, variables)
        bound = _run_stage(report, "bind", page, lambda page=page, context=context: bind_unit(page.unit, context, evaluator))
        report.bound_elements += bound or 0
    report.enter(UnitState.BOUND)

    report.enter(UnitState.PARTIAL if report.faults or report.aborted else UnitState.DONE)
    return report


def fill_document(
    document: Document,
    data: Any,
    config: Optional[BindingConfig] = None,
    evaluator: Optional[Evaluator] = None,
) -> DocumentReport:
    config = config or BindingConfig()
    evaluator = evaluator or DefaultEvaluator()
    data_map = normalize_data(data)
    variables = base_variables(data_map, config)
    report = DocumentReport()

    templates = list(document.units)
    for i, unit in enumerate(templates, start=1):
        if config.verbose:
            _log_verbose_progress("Binding slides", i, len(templates), unit.name)
        report.units.append(process_unit(document, unit, data_map, config, evaluator, variables))

    if report.partial:
        LOG.warning("Some slides were only partially generated; see the report for details")
    LOG.info("Document now has %d slide(s) from %d template slide(s)", len(document.units), len(templates))
    return report


def write_report(report: DocumentReport, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def run_pipeline(
    *,
    template_path: Path,
    data_path: Path,
    output_path: Path,
    config: BindingConfig,
    report_path: Optional[Path] = None,
) -> DocumentReport:
    _configure_deckfill_logger(_resolve_log_level(config.verbose, config.debug))

    if not template_path.exists():
        raise RuntimeError(f"Template deck not found: {template_path}")
    if not data_path.exists():
        raise RuntimeError(f"Data file not found: {data_path}")

    document = load_deck(template_path)
    try:
        data = load_data_file(data_path)
    except ValueError as exc:
        raise RuntimeError(str(exc)) from exc

    report = fill_document(document, data, config)

    try:
        save_deck(document, output_path)
    except OSError as exc:
        raise RuntimeError(f"Unable to write output deck {output_path}: {exc}") from exc
    if config.verbose:
        LOG.info("Output written: %s", output_path)

    if report_path is not None:
        write_report(report, report_path)
    return report
