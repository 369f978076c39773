# src/factcounters/core/config.py
"""
Configuration schema and loading for factcounters workers.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction; a reload builds a new
settings object and a new registry, never mutates the old ones.
"""

import csv
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from factcounters.contracts.facts import FieldKind
from factcounters.contracts.results import RetrievalStrategy
from factcounters.contracts.rules import RuleRow
from factcounters.core.hashing import KeyMode

# Column headers of a rule sheet, mapped to RuleRow attributes
RULE_SHEET_COLUMNS: dict[str, str] = {
    "Name": "name",
    "Comment": "comment",
    "Index": "index",
    "Computation Conditions": "computation",
    "Evaluation Conditions": "evaluation",
    "Attributes": "attributes",
    "Fact Types": "fact_types",
    "From Offset": "from_offset",
    "To Offset": "to_offset",
    "Max Evaluated Records": "max_evaluated_records",
    "Max Matching Records": "max_matching_records",
}


class IndexMappingSettings(BaseModel):
    """Maps one fact field to an index type.

    Example YAML:
        index_mappings:
          - field: PAN
            index_type_name: pan
            index_type: 1
          - field: merchant_id
            index_type_name: merchant
            index_type: 2
            fact_types: [1, 2]
            depth_limit: 500
    """

    model_config = {"frozen": True, "extra": "forbid"}

    field: str = Field(min_length=1, description="Fact data field to index")
    index_type_name: str = Field(min_length=1, description="Index type name referenced by rules")
    index_type: int = Field(gt=0, description="Unique positive index type number")
    fact_types: frozenset[int] | None = Field(
        default=None,
        description="Fact types this mapping applies to (None = all types)",
    )
    key_mode: KeyMode = Field(default=KeyMode.HASH, description="hash (sha256) or raw value keys")
    depth_limit: int | None = Field(
        default=None,
        gt=0,
        description="Candidate depth when no rule on this index declares max_evaluated_records",
    )

    def applies_to(self, fact_type: int) -> bool:
        return self.fact_types is None or fact_type in self.fact_types


class RuleSettings(BaseModel):
    """Inline rule definition, same columns as a rule sheet row."""

    model_config = {"frozen": True, "extra": "forbid"}

    name: str
    index: str
    comment: str = ""
    computation: str = ""
    evaluation: str = ""
    attributes: str = ""
    fact_types: list[int] | None = None
    from_offset: str | int | None = None
    to_offset: str | int | None = None
    max_evaluated_records: int | None = Field(default=None, gt=0)
    max_matching_records: int | None = Field(default=None, gt=0)

    def to_row(self, row: int) -> RuleRow:
        def text(value: Any) -> str:
            return "" if value is None else str(value)

        return RuleRow(
            row=row,
            name=self.name,
            index=self.index,
            comment=self.comment,
            computation=self.computation,
            evaluation=self.evaluation,
            attributes=self.attributes,
            fact_types=",".join(str(t) for t in self.fact_types) if self.fact_types else "",
            from_offset=text(self.from_offset),
            to_offset=text(self.to_offset),
            max_evaluated_records=text(self.max_evaluated_records),
            max_matching_records=text(self.max_matching_records),
        )


class CompilerSettings(BaseModel):
    """Condition compiler configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    amount_field: str = Field(default="amount", description="Default field for sum/average/min/max")
    distinct_field: str = Field(default="PAN", description="Default field for distinct-count")
    window_fields: tuple[str, ...] = Field(
        default=("occurredAt", "dt"),
        description="Fields whose NOW-relative bounds are lifted into window offsets",
    )
    field_types: dict[str, FieldKind] = Field(
        default_factory=dict,
        description="Explicit field kinds, consulted before name heuristics",
    )


class LimitSettings(BaseModel):
    """Per-request fan-out limits.

    Example YAML:
        limits:
          max_counters_per_request: 20   # rules per group
          max_counters_processing: 500   # rules per fact
          max_depth_limit: 1000          # candidate cap per index type
    """

    model_config = {"frozen": True, "extra": "forbid"}

    max_counters_per_request: int = Field(
        default=20,
        ge=0,
        description="Maximum rules per counter group (0 = unbounded)",
    )
    max_counters_processing: int = Field(
        default=0,
        ge=0,
        description="Maximum applicable rules per fact; excess is skipped (0 = unbounded)",
    )
    max_depth_limit: int = Field(default=1000, gt=0, description="Hard cap on candidate lookup depth")
    default_depth_limit: int = Field(
        default=100,
        gt=0,
        description="Lookup depth when neither rules nor mapping declare one",
    )


class ConcurrencySettings(BaseModel):
    """Thread pool and deadline for counter requests."""

    model_config = {"frozen": True, "extra": "forbid"}

    pool_size: int = Field(default=8, gt=0, description="Worker threads per processor")
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Deadline for one indexing+computation call (None = no deadline)",
    )


class DatabaseSettings(BaseModel):
    """Database connection configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    url: str = Field(default="sqlite:///factcounters.db", description="SQLAlchemy database URL")
    pool_size: int = Field(default=5, gt=0, description="Connection pool size")
    echo: bool = Field(default=False, description="Echo SQL statements")


class StorageSettings(BaseModel):
    """Fact store selection and write behaviour."""

    model_config = {"frozen": True, "extra": "forbid"}

    backend: Literal["sql", "memory"] = Field(default="sql", description="Store implementation")
    include_fact_data_in_index: bool = Field(
        default=False,
        description="Copy fact data onto index entries so single-phase needs no join",
    )
    write_mode: Literal["bulk", "single"] = Field(
        default="bulk",
        description="One unordered bulk upsert, or concurrent single upserts",
    )
    write_concurrency: int = Field(default=4, gt=0, description="Concurrent single writes")


class LoggingSettings(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class TelemetrySettings(BaseModel):
    """Metrics export. In-process aggregates are always kept."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(default=False, description="Record OpenTelemetry instruments")
    meter_name: str = Field(default="factcounters", description="OpenTelemetry meter name")


class FactCountersSettings(BaseModel):
    """Top-level worker configuration.

    This is the single source of truth for one worker. All settings are
    validated and frozen after construction.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    strategy: RetrievalStrategy = Field(
        default=RetrievalStrategy.TWO_PHASE,
        description="Candidate retrieval strategy",
    )
    index_mappings: list[IndexMappingSettings] = Field(
        default_factory=list,
        description="Field to index type mappings",
    )
    rules: list[RuleSettings] = Field(default_factory=list, description="Inline rule definitions")
    rules_file: Path | None = Field(default=None, description="Rule file (YAML list or ;-delimited sheet)")
    compiler: CompilerSettings = Field(default_factory=CompilerSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    @field_validator("index_mappings")
    @classmethod
    def validate_unique_index_types(cls, v: list[IndexMappingSettings]) -> list[IndexMappingSettings]:
        """Index type numbers are unique, and so is each field/name pair."""
        numbers = [m.index_type for m in v]
        duplicates = {n for n in numbers if numbers.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate index_type value(s): {sorted(duplicates)}")
        pairs = [(m.field, m.index_type_name) for m in v]
        duplicate_pairs = {p for p in pairs if pairs.count(p) > 1}
        if duplicate_pairs:
            raise ValueError(f"Duplicate field/index_type_name pair(s): {sorted(duplicate_pairs)}")
        return v

    @model_validator(mode="after")
    def validate_rules_source(self) -> "FactCountersSettings":
        """Inline rules and a rules file are mutually exclusive."""
        if self.rules and self.rules_file is not None:
            raise ValueError("Configure either inline 'rules' or 'rules_file', not both")
        return self

    def rule_rows(self) -> list[RuleRow]:
        """Uncompiled rule rows from whichever source is configured."""
        if self.rules_file is not None:
            return read_rule_file(self.rules_file)
        return [rule.to_row(index) for index, rule in enumerate(self.rules, start=1)]


def read_rule_file(path: Path) -> list[RuleRow]:
    """Read rule rows from a YAML rule list or a ``;``-delimited sheet.

    ``.yaml``/``.yml`` files hold a list of rule mappings with the same
    keys as inline ``rules``; anything else is read as a rule sheet.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is malformed
    """
    if path.suffix.lower() not in (".yaml", ".yml"):
        return read_rule_sheet(path)
    if not path.exists():
        raise FileNotFoundError(f"Rule file not found: {path}")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in rule file {path}: {e}") from e
    if loaded is None:
        return []
    if not isinstance(loaded, list):
        raise ValueError(f"Rule file {path} must contain a list of rules")
    return [RuleSettings(**item).to_row(index) for index, item in enumerate(loaded, start=1)]


def read_rule_sheet(path: Path) -> list[RuleRow]:
    """Read a ``;``-delimited rule sheet.

    Row numbers are file line numbers, the header being line 1. Unknown
    columns are ignored; missing optional columns read as empty text.

    Raises:
        FileNotFoundError: If the sheet doesn't exist
        ValueError: If the Name or Index column is missing
    """
    if not path.exists():
        raise FileNotFoundError(f"Rule sheet not found: {path}")
    with path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle, delimiter=";", quotechar='"')
        headers = {h.strip() for h in reader.fieldnames or []}
        missing = {"Name", "Index"} - headers
        if missing:
            raise ValueError(f"Rule sheet {path} is missing column(s): {sorted(missing)}")
        rows: list[RuleRow] = []
        for raw in reader:
            values = {
                attr: (raw.get(column) or "").strip()
                for column, attr in RULE_SHEET_COLUMNS.items()
            }
            if not any(values.values()):
                continue
            rows.append(RuleRow(row=reader.line_num, **values))
    return rows


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""
    import os

    def replacer(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        default = match.group(2)
        if default is not None:
            return default
        # Left as-is so validation reports the unexpanded value
        return match.group(0)

    def expand(value: Any) -> Any:
        if isinstance(value, str):
            return _ENV_VAR_PATTERN.sub(replacer, value)
        if isinstance(value, dict):
            return {k: expand(v) for k, v in value.items()}
        if isinstance(value, list):
            return [expand(item) for item in value]
        return value

    return {k: expand(v) for k, v in config.items()}


def load_settings(config_path: Path) -> FactCountersSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (FACTCOUNTERS_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: FACTCOUNTERS_DATABASE__URL for nested keys.
    A relative ``rules_file`` resolves against the config file's directory.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated FactCountersSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="FACTCOUNTERS",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)

    rules_file = raw_config.get("rules_file")
    if rules_file:
        candidate = Path(rules_file)
        if not candidate.is_absolute():
            raw_config["rules_file"] = str(config_path.parent / candidate)

    return FactCountersSettings(**raw_config)
