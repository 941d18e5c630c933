"""Unit tests for recipe configuration models."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from kegtap.config import (
    RecipeConfig,
    derive_version,
    dump_recipe_file,
    load_recipe_file,
    parse_numeric_version,
    parse_recipe_config,
)
from kegtap.errors import ParseError

SHA = "a" * 64


def _valid_recipe_data() -> dict[str, object]:
    return {
        "name": "spread",
        "desc": "Headless TOEFL Vocabulary Builder for Developers",
        "homepage": "https://github.com/nkinba/voca-agent",
        "url": "https://github.com/nkinba/voca-agent/archive/refs/tags/v0.1.0.tar.gz",
        "sha256": SHA,
        "license": "MIT",
        "depends_on": [{"rust": "build"}],
        "install": [{"builder": "cargo", "path": "app"}],
        "test": [{"run": ["{bin}/spread", "--help"], "expect": "spread"}],
    }


def test_valid_recipe_config_parses() -> None:
    """The spread recipe should parse with a version derived from its URL."""
    config = RecipeConfig.model_validate(_valid_recipe_data())

    assert config.name == "spread"
    assert config.version == "0.1.0"
    assert [dep.name for dep in config.build_dependencies] == ["rust"]
    assert config.run_dependencies == []
    assert config.install[0].builder == "cargo"
    assert config.install[0].path == "app"
    assert config.test[0].expect == "spread"
    assert config.test[0].exit_code == 0


def test_explicit_version_wins_over_url() -> None:
    data = _valid_recipe_data()
    data["version"] = "0.1.0-rc1"

    config = RecipeConfig.model_validate(data)

    assert config.version == "0.1.0-rc1"


def test_version_required_when_url_has_none() -> None:
    data = _valid_recipe_data()
    data["url"] = "https://example.com/download/latest"

    with pytest.raises(ValidationError, match="version could not be derived"):
        RecipeConfig.model_validate(data)


@pytest.mark.parametrize("version", ["../x", "1.0/beta", "../../../escaped", "1..2", ".hidden"])
def test_version_must_be_a_single_safe_component(version: str) -> None:
    data = _valid_recipe_data()
    data["version"] = version

    with pytest.raises(ValidationError, match="invalid version"):
        RecipeConfig.model_validate(data)


@pytest.mark.parametrize(("raw", "expected"), [(1.2, "1.2"), (3, "3")])
def test_numeric_yaml_version_is_coerced_to_string(raw: object, expected: str) -> None:
    data = _valid_recipe_data()
    data["version"] = raw

    assert RecipeConfig.model_validate(data).version == expected


def test_sha256_is_normalized_to_lowercase() -> None:
    data = _valid_recipe_data()
    data["sha256"] = "  " + "ABCDEF0123456789" * 4 + " "

    config = RecipeConfig.model_validate(data)

    assert config.sha256 == "abcdef0123456789" * 4


@pytest.mark.parametrize("digest", ["PLACEHOLDER_SHA256", "abc", "g" * 64])
def test_malformed_sha256_raises_validation_error(digest: str) -> None:
    data = _valid_recipe_data()
    data["sha256"] = digest

    with pytest.raises(ValidationError):
        RecipeConfig.model_validate(data)


def test_dependency_spellings_normalize() -> None:
    data = _valid_recipe_data()
    data["depends_on"] = [
        "openssl",
        {"rust": "build"},
        {"name": "pkgconf", "scope": "build", "min_version": "1.8"},
    ]

    config = RecipeConfig.model_validate(data)

    assert [(dep.name, dep.scope) for dep in config.depends_on] == [
        ("openssl", "run"),
        ("rust", "build"),
        ("pkgconf", "build"),
    ]
    assert config.depends_on[2].min_version == "1.8"


def test_dependency_mapping_form_normalizes() -> None:
    data = _valid_recipe_data()
    data["depends_on"] = {"rust": "build", "openssl": "run"}

    config = RecipeConfig.model_validate(data)

    assert {dep.name: dep.scope for dep in config.depends_on} == {"rust": "build", "openssl": "run"}


def test_duplicate_dependency_raises_validation_error() -> None:
    data = _valid_recipe_data()
    data["depends_on"] = ["rust", {"rust": "build"}]

    with pytest.raises(ValidationError, match="declared more than once"):
        RecipeConfig.model_validate(data)


def test_self_dependency_raises_validation_error() -> None:
    data = _valid_recipe_data()
    data["depends_on"] = ["spread"]

    with pytest.raises(ValidationError, match="must not depend on itself"):
        RecipeConfig.model_validate(data)


def test_unknown_dependency_scope_raises_validation_error() -> None:
    data = _valid_recipe_data()
    data["depends_on"] = [{"rust": "optional"}]

    with pytest.raises(ValidationError):
        RecipeConfig.model_validate(data)


def test_script_step_requires_run() -> None:
    data = _valid_recipe_data()
    data["install"] = [{"builder": "script"}]

    with pytest.raises(ValidationError, match="missing required field"):
        RecipeConfig.model_validate(data)


def test_script_step_splits_string_command() -> None:
    data = _valid_recipe_data()
    data["install"] = [{"builder": "script", "run": "make install PREFIX={prefix}"}]

    config = RecipeConfig.model_validate(data)

    assert config.install[0].run == ["make", "install", "PREFIX={prefix}"]


def test_copy_step_requires_files() -> None:
    data = _valid_recipe_data()
    data["install"] = [{"builder": "copy"}]

    with pytest.raises(ValidationError, match="files"):
        RecipeConfig.model_validate(data)


@pytest.mark.parametrize("path", ["/usr/local", "../outside", "app/../../etc"])
def test_step_paths_must_stay_inside_build_tree(path: str) -> None:
    data = _valid_recipe_data()
    data["install"] = [{"builder": "cargo", "path": path}]

    with pytest.raises(ValidationError, match="inside the build tree"):
        RecipeConfig.model_validate(data)


def test_unknown_builder_raises_validation_error() -> None:
    data = _valid_recipe_data()
    data["install"] = [{"builder": "bazel"}]

    with pytest.raises(ValidationError):
        RecipeConfig.model_validate(data)


def test_empty_install_raises_validation_error() -> None:
    data = _valid_recipe_data()
    data["install"] = []

    with pytest.raises(ValidationError):
        RecipeConfig.model_validate(data)


def test_invalid_test_pattern_raises_validation_error() -> None:
    data = _valid_recipe_data()
    data["test"] = [{"run": ["{bin}/spread"], "pattern": "spread("}]

    with pytest.raises(ValidationError, match="invalid test pattern"):
        RecipeConfig.model_validate(data)


def test_extra_fields_are_rejected() -> None:
    data = _valid_recipe_data()
    data["bottle"] = {"sha256": SHA}

    with pytest.raises(ValidationError):
        RecipeConfig.model_validate(data)


def test_parse_recipe_config_reports_missing_fields_with_name() -> None:
    data = deepcopy(_valid_recipe_data())
    del data["url"]
    del data["sha256"]

    with pytest.raises(ParseError) as exc_info:
        parse_recipe_config(data, source="spread.yaml")

    error = exc_info.value
    assert error.recipe == "spread"
    assert error.exit_code == 2
    assert "missing required field 'url'" in error.errors
    assert "missing required field 'sha256'" in error.errors
    assert "spread.yaml" in str(error)


def test_load_recipe_file_rejects_missing_and_malformed(tmp_path: Path) -> None:
    with pytest.raises(ParseError, match="not found"):
        load_recipe_file(tmp_path / "missing.yaml")

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ParseError, match="is empty"):
        load_recipe_file(empty)

    broken = tmp_path / "broken.yaml"
    broken.write_text("name: [unterminated\n", encoding="utf-8")
    with pytest.raises(ParseError, match="not valid YAML"):
        load_recipe_file(broken)

    listing = tmp_path / "list.yaml"
    listing.write_text("- spread\n", encoding="utf-8")
    with pytest.raises(ParseError, match="mapping"):
        load_recipe_file(listing)

    latin1 = tmp_path / "latin1.yaml"
    latin1.write_bytes(b"name: spread\ndesc: caf\xe9\n")
    with pytest.raises(ParseError, match="not valid UTF-8"):
        load_recipe_file(latin1)


def test_dump_and_load_recipe_file(tmp_path: Path) -> None:
    path = tmp_path / "snapshot" / "recipe.yaml"
    recipe = RecipeConfig.model_validate(_valid_recipe_data())

    dump_recipe_file(recipe, path)

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert document["version"] == "0.1.0"
    assert document["depends_on"] == [{"name": "rust", "scope": "build"}]
    assert load_recipe_file(path).to_document() == recipe.to_document()


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/nkinba/voca-agent/archive/refs/tags/v0.1.0.tar.gz", "0.1.0"),
        ("https://example.com/tool-2.4.1.tar.xz", "2.4.1"),
        ("https://example.com/tool_1.0.zip", "1.0"),
        ("https://example.com/tool-3.0.0-rc1.tgz", "3.0.0-rc1"),
        ("https://example.com/tool.tar.gz", None),
    ],
)
def test_derive_version(url: str, expected: str | None) -> None:
    assert derive_version(url) == expected


def test_parse_numeric_version() -> None:
    assert parse_numeric_version("1") == (1, 0, 0)
    assert parse_numeric_version("1.75") == (1, 75, 0)
    assert parse_numeric_version("1.75.2") == (1, 75, 2)
    assert parse_numeric_version("1.75.0-nightly") is None
