# tests/core/test_config.py
"""Tests for configuration schema and loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from factcounters.contracts.facts import FieldKind
from factcounters.contracts.results import RetrievalStrategy
from factcounters.core.config import (
    FactCountersSettings,
    IndexMappingSettings,
    LimitSettings,
    RuleSettings,
    load_settings,
    read_rule_file,
    read_rule_sheet,
)
from factcounters.core.hashing import KeyMode

SETTINGS_YAML = """\
strategy: single_phase
index_mappings:
  - field: PAN
    index_type_name: card
    index_type: 1
  - field: merchant
    index_type_name: merchant
    index_type: 2
    fact_types: [1, 2]
    key_mode: raw
rules:
  - name: card_count_1h
    index: card
    computation: "amount ≥ 100000"
    attributes: Frequency
    from_offset: 1h
compiler:
  field_types:
    PAN: string
limits:
  max_counters_per_request: 5
database:
  url: ${COUNTERS_TEST_DB_URL:-sqlite:///:memory:}
"""

RULE_SHEET = """\
Name;Comment;Index;Computation Conditions;Evaluation Conditions;Attributes
card.count;Recent card activity;card;amount ≥ 100000;;Frequency

merchant_sum;;merchant;;"status =*= fraud;review";Total Amount
"""


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


class TestSettingsSchema:
    def test_defaults(self) -> None:
        settings = FactCountersSettings()
        assert settings.strategy is RetrievalStrategy.TWO_PHASE
        assert settings.limits.max_counters_per_request == 20
        assert settings.storage.backend == "sql"
        assert settings.concurrency.timeout_seconds is None

    def test_frozen(self) -> None:
        settings = FactCountersSettings()
        with pytest.raises(ValidationError):
            settings.strategy = RetrievalStrategy.SINGLE_PHASE  # type: ignore[misc]

    def test_unknown_keys_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FactCountersSettings(unknown_option=True)  # type: ignore[call-arg]

    def test_duplicate_index_type_numbers_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Duplicate index_type"):
            FactCountersSettings(
                index_mappings=[
                    IndexMappingSettings(field="PAN", index_type_name="card", index_type=1),
                    IndexMappingSettings(field="merchant", index_type_name="merchant", index_type=1),
                ]
            )

    def test_rules_and_rules_file_exclusive(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="either inline"):
            FactCountersSettings(
                rules=[RuleSettings(name="a", index="card")],
                rules_file=tmp_path / "rules.csv",
            )

    def test_negative_limits_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LimitSettings(max_counters_per_request=-1)

    def test_mapping_applies_to(self) -> None:
        mapping = IndexMappingSettings(field="PAN", index_type_name="card", index_type=1, fact_types=frozenset({2}))
        assert mapping.applies_to(2)
        assert not mapping.applies_to(1)

    def test_rule_settings_to_row(self) -> None:
        row = RuleSettings(
            name="a",
            index="card",
            fact_types=[1, 2],
            from_offset=3_600_000,
            max_evaluated_records=50,
        ).to_row(4)
        assert row.row == 4
        assert row.fact_types == "1,2"
        assert row.from_offset == "3600000"
        assert row.to_offset == ""
        assert row.max_evaluated_records == "50"


class TestLoadSettings:
    def test_load_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("COUNTERS_TEST_DB_URL", raising=False)
        settings = load_settings(_write(tmp_path, "settings.yaml", SETTINGS_YAML))

        assert settings.strategy is RetrievalStrategy.SINGLE_PHASE
        assert [m.index_type_name for m in settings.index_mappings] == ["card", "merchant"]
        assert settings.index_mappings[1].key_mode is KeyMode.RAW
        assert settings.index_mappings[1].fact_types == frozenset({1, 2})
        assert settings.rules[0].from_offset == "1h"
        assert settings.compiler.field_types == {"PAN": FieldKind.STRING}
        assert settings.limits.max_counters_per_request == 5
        assert settings.database.url == "sqlite:///:memory:"

    def test_env_var_expansion(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COUNTERS_TEST_DB_URL", "sqlite:///counters.db")
        settings = load_settings(_write(tmp_path, "settings.yaml", SETTINGS_YAML))
        assert settings.database.url == "sqlite:///counters.db"

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FACTCOUNTERS_STRATEGY", "two_phase")
        settings = load_settings(_write(tmp_path, "settings.yaml", SETTINGS_YAML))
        assert settings.strategy is RetrievalStrategy.TWO_PHASE

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")

    def test_rules_file_relative_to_config(self, tmp_path: Path) -> None:
        _write(tmp_path, "rules.csv", RULE_SHEET)
        config = _write(tmp_path, "settings.yaml", "rules_file: rules.csv\n")
        settings = load_settings(config)
        assert settings.rules_file == tmp_path / "rules.csv"
        assert [row.name for row in settings.rule_rows()] == ["card.count", "merchant_sum"]


class TestRuleFiles:
    def test_read_rule_sheet(self, tmp_path: Path) -> None:
        rows = read_rule_sheet(_write(tmp_path, "rules.csv", RULE_SHEET))
        assert len(rows) == 2
        first, second = rows
        assert first.row == 2
        assert first.computation == "amount ≥ 100000"
        assert first.comment == "Recent card activity"
        # line numbers include the blank line
        assert second.row == 4
        assert second.evaluation == "status =*= fraud;review"

    def test_sheet_missing_required_column(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "rules.csv", "Name;Comment\na;b\n")
        with pytest.raises(ValueError, match="Index"):
            read_rule_sheet(path)

    def test_read_yaml_rule_file(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "rules.yaml",
            "- name: a\n  index: card\n  attributes: Total Amount\n- name: b\n  index: merchant\n",
        )
        rows = read_rule_file(path)
        assert [(row.row, row.name, row.index) for row in rows] == [(1, "a", "card"), (2, "b", "merchant")]
        assert rows[0].attributes == "Total Amount"

    def test_yaml_rule_file_must_be_list(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="list of rules"):
            read_rule_file(_write(tmp_path, "rules.yml", "name: a\n"))

    def test_invalid_yaml_rule_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid YAML"):
            read_rule_file(_write(tmp_path, "rules.yaml", "- name: [unclosed\n"))

    def test_missing_rule_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            read_rule_file(tmp_path / "rules.yaml")
