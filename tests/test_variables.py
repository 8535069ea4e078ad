"""
Tests for variable resolution.

Covers ${service.output} references and ${env:...} / ${sw:stage} sources.
"""
import pytest

from stackweave.errors import (
    InvalidConfigurationError,
    InvalidReferenceError,
    InvalidReferenceTypeError,
    MissingEnvironmentVariableError,
    UnrecognizedVariableSourceError,
)
from stackweave.variables import (
    find_references,
    lookup_path,
    resolve_configuration_variables,
    resolve_references,
)


class TestFindReferences:
    """Tests for reference discovery."""

    def test_nested_references_in_order(self):
        """References are found anywhere in the tree."""
        value = {
            "params": {"queue": "${resources.QueueArn}"},
            "list": ["x", "${db.url}", {"deep": "pre-${resources.QueueArn}"}],
        }
        tokens = [ref.token for ref in find_references(value)]
        assert tokens == ["${resources.QueueArn}", "${db.url}"]

    def test_service_id_and_path(self):
        """A reference exposes its service id and path."""
        (ref,) = find_references("${api.endpoints.0}")
        assert ref.service_id == "api"
        assert ref.path == ("api", "endpoints", "0")

    def test_sources_are_not_references(self):
        """${env:X} and ${sw:stage} are configuration sources."""
        assert find_references({"a": "${env:HOME}", "b": "${sw:stage}"}) == []


class TestResolveReferences:
    """Tests for output reference resolution."""

    def test_no_references_is_identity(self):
        """A tree without references comes back equal, as a copy."""
        value = {"a": [1, 2, {"b": True}], "c": None}
        resolved = resolve_references(value, {})
        assert resolved == value
        assert resolved is not value

    def test_whole_token_keeps_type(self):
        """A string that is exactly one token takes the referenced value."""
        lookup = {"db": {"port": 5432, "hosts": ["a", "b"]}}
        resolved = resolve_references({"port": "${db.port}", "hosts": "${db.hosts}"}, lookup)
        assert resolved == {"port": 5432, "hosts": ["a", "b"]}

    def test_embedded_token_interpolates(self):
        """Tokens inside larger strings are interpolated."""
        lookup = {"api": {"host": "example.com", "port": 443}}
        resolved = resolve_references("https://${api.host}:${api.port}/v1", lookup)
        assert resolved == "https://example.com:443/v1"

    def test_embedded_non_string_fails(self):
        """Interpolating a mapping into a string is rejected."""
        with pytest.raises(InvalidReferenceTypeError) as exc_info:
            resolve_references("url=${api.config}", {"api": {"config": {"a": 1}}})
        assert exc_info.value.reference == "${api.config}"

    def test_missing_output(self):
        """A reference to an absent output fails."""
        with pytest.raises(InvalidReferenceError) as exc_info:
            resolve_references("${api.url}", {"api": {}})
        assert "the referenced output does not exist" in str(exc_info.value)

    def test_service_without_outputs(self):
        """A service with no stored outputs is named, and not reported as missing."""
        with pytest.raises(InvalidReferenceError) as exc_info:
            resolve_references("${ghost.url}", {"api": {}})
        assert '"ghost" has no outputs yet' in str(exc_info.value)
        assert "does not exist" not in str(exc_info.value)

    def test_fixed_point(self):
        """Chained references converge within the pass bound."""
        value = {"a": "${b.x}", "b": {"x": "${c.y}"}, "c": {"y": "literal"}}
        assert resolve_references(value) == {
            "a": "literal",
            "b": {"x": "literal"},
            "c": {"y": "literal"},
        }

    def test_non_converging_references_fail(self):
        """Self-referencing values hit the pass bound."""
        with pytest.raises(InvalidReferenceError) as exc_info:
            resolve_references({"a": {"x": "${a.x}-more"}}, max_passes=5)
        assert "do not converge" in str(exc_info.value)

    def test_input_not_mutated(self):
        """The input tree is left untouched."""
        value = {"q": "${r.arn}"}
        resolve_references(value, {"r": {"arn": "arn:1"}})
        assert value == {"q": "${r.arn}"}

    def test_list_index_path(self):
        """Numeric path segments index into lists."""
        assert lookup_path({"a": {"b": ["x", "y"]}}, ("a", "b", "1")) == "y"


class TestResolveConfigurationVariables:
    """Tests for ${env:...} and ${sw:stage}."""

    def test_env_and_stage(self):
        """Environment variables and stage are substituted."""
        configuration = {
            "name": "shop-${sw:stage}",
            "services": {"api": {"params": {"token": "${env:TOKEN}"}}},
        }
        resolved = resolve_configuration_variables(configuration, "prod", {"TOKEN": "s3cret"})
        assert resolved["name"] == "shop-prod"
        assert resolved["services"]["api"]["params"]["token"] == "s3cret"

    def test_output_references_untouched(self):
        """Late-bound references survive configuration resolution."""
        configuration = {"services": {"c": {"q": "${resources.QueueArn}"}}}
        resolved = resolve_configuration_variables(configuration, "dev", {})
        assert resolved == configuration

    def test_plain_stage_is_not_special(self):
        """${stage} is an output reference, not the stage."""
        resolved = resolve_configuration_variables({"a": "${stage}"}, "dev", {})
        assert resolved == {"a": "${stage}"}

    def test_missing_environment_variable(self):
        """An undefined environment variable names the variable."""
        with pytest.raises(MissingEnvironmentVariableError) as exc_info:
            resolve_configuration_variables({"a": "${env:MISSING_VAR}"}, "dev", {})
        assert exc_info.value.name == "MISSING_VAR"
        assert "MISSING_VAR" in str(exc_info.value)

    def test_unrecognized_sources_reported_together(self):
        """Every unknown source is collected before failing."""
        configuration = {"a": "${ssm:/path}", "b": ["${file:x.json}"], "c": "${ssm:/other}"}
        with pytest.raises(UnrecognizedVariableSourceError) as exc_info:
            resolve_configuration_variables(configuration, "dev", {})
        assert exc_info.value.sources == ["file", "ssm"]

    def test_environment_value_with_stage(self):
        """A substituted value may itself contain a source."""
        resolved = resolve_configuration_variables(
            {"bucket": "${env:BUCKET}"}, "prod", {"BUCKET": "assets-${sw:stage}"}
        )
        assert resolved == {"bucket": "assets-prod"}

    def test_self_referencing_environment_fails(self):
        """An environment value that expands to itself never converges."""
        with pytest.raises(InvalidConfigurationError) as exc_info:
            resolve_configuration_variables({"a": "${env:LOOP}"}, "dev", {"LOOP": "${env:LOOP}"})
        assert exc_info.value.code == "CONFIGURATION_VARIABLES_DO_NOT_CONVERGE"
