"""Tests for database name validation."""

import pytest

from buildflow.errors import InvalidDatabaseNameError
from buildflow.storage.identifiers import validate_database_name


class TestValidateDatabaseName:
    @pytest.mark.parametrize(
        "name",
        ["agency_acme", "_private", "Agency-01", "a", "x" * 63],
    )
    def test_valid_names(self, name: str) -> None:
        assert validate_database_name(name) == name

    def test_surrounding_whitespace_trimmed(self) -> None:
        assert validate_database_name("  agency_acme ") == "agency_acme"

    @pytest.mark.parametrize(
        "name",
        [
            "",
            "   ",
            None,
            42,
            "1agency",
            "agency;drop",
            'agency"quoted',
            "agency name",
            "agency.acme",
            "x" * 64,
        ],
    )
    def test_invalid_names(self, name: object) -> None:
        with pytest.raises(InvalidDatabaseNameError):
            validate_database_name(name)

    @pytest.mark.parametrize("name", ["select", "USER", "table"])
    def test_reserved_keywords_refused(self, name: str) -> None:
        with pytest.raises(InvalidDatabaseNameError, match="reserved"):
            validate_database_name(name)

    def test_error_carries_name(self) -> None:
        with pytest.raises(InvalidDatabaseNameError) as exc_info:
            validate_database_name("bad;name")
        assert exc_info.value.name == "bad;name"
