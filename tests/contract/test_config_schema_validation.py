from __future__ import annotations

import copy
import json
import pathlib

import jsonschema
import pytest
import yaml
from jsonschema.exceptions import ValidationError

"""Config schema contract test (shipped config_schema.json vs. sample configs)."""

ROOT = pathlib.Path(__file__).resolve().parents[2]
SCHEMA_PATH = ROOT / "fastlane_sync" / "config" / "config_schema.json"
SAMPLE_PATH = ROOT / "config" / "sync.yml"

MINIMAL = {
    "credentials": {"default": {"app_key_env": "HAP_APP_KEY", "sign_env": "HAP_SIGN"}},
    "tables": {
        "accounts": {
            "worksheet_id": "640adea9c04c8d453ff1ce52",
            "credentials": "default",
            "natural_key_column": "hap_row_id",
            "fields": {"account_email": {"id": "640adea9c04c8d453ff1ce53"}},
        }
    },
}


@pytest.fixture(scope="module")
def schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_config_schema_valid_minimal(schema):
    jsonschema.validate(MINIMAL, schema)


def test_shipped_sample_config_matches_schema(schema):
    jsonschema.validate(yaml.safe_load(SAMPLE_PATH.read_text(encoding="utf-8")), schema)


def test_config_schema_missing_required_key(schema):
    config = copy.deepcopy(MINIMAL)
    del config["credentials"]
    with pytest.raises(ValidationError):
        jsonschema.validate(config, schema)


def test_config_schema_table_needs_a_worksheet(schema):
    config = copy.deepcopy(MINIMAL)
    del config["tables"]["accounts"]["worksheet_id"]
    with pytest.raises(ValidationError):
        jsonschema.validate(config, schema)
    config["tables"]["accounts"]["worksheet_id_env"] = "HAP_WORKSHEET_ACCOUNTS"
    jsonschema.validate(config, schema)


@pytest.mark.parametrize(
    "path,value",
    [
        (("page_size",), 0),
        (("page_size",), 5000),
        (("retry",), {"max_attempts": 0}),
        (("tables", "accounts", "fields", "account_email", "type"), "currency"),
        (("tables", "accounts", "target_table"), "Accounts; drop"),
        (("tables", "accounts", "unknown_key"), 1),
        (("source_directory",), "./data"),
    ],
)
def test_config_schema_rejects(schema, path, value):
    config = copy.deepcopy(MINIMAL)
    node = config
    for key in path[:-1]:
        node = node[key]
    node[path[-1]] = value
    with pytest.raises(ValidationError):
        jsonschema.validate(config, schema)


def test_config_schema_filter_tree(schema):
    config = copy.deepcopy(MINIMAL)
    config["tables"]["accounts"]["filter"] = {
        "type": "group",
        "logic": "AND",
        "children": [{"type": "condition", "field": "6432921f1a26322d585e393b", "operator": "eq", "value": "active"}],
    }
    jsonschema.validate(config, schema)
    config["tables"]["accounts"]["filter"]["logic"] = "XOR"
    with pytest.raises(ValidationError):
        jsonschema.validate(config, schema)
