"""Tests for role ordering."""

import pytest

from buildflow.auth.roles import (
    ROLE_HIERARCHY,
    UNKNOWN_RANK,
    Role,
    effective_role,
    has_role_or_higher,
    is_system_check,
    rank,
)


class TestRank:
    def test_hierarchy_covers_every_role(self) -> None:
        assert len(ROLE_HIERARCHY) == 22
        assert sorted(ROLE_HIERARCHY.values()) == list(range(1, 23))

    @pytest.mark.parametrize(
        ("role", "expected"),
        [
            ("super_admin", 1),
            ("ceo", 2),
            ("admin", 6),
            ("team_lead", 9),
            ("employee", 20),
            ("intern", 22),
        ],
    )
    def test_known_ranks(self, role: str, expected: int) -> None:
        assert rank(role) == expected

    def test_unknown_role_ranks_last(self) -> None:
        assert rank("janitor") == UNKNOWN_RANK
        assert rank("janitor") > rank(Role.INTERN)


class TestEffectiveRole:
    def test_highest_authority_wins(self) -> None:
        assert effective_role(["employee", "admin", "team_lead"]) == "admin"

    def test_empty_is_none(self) -> None:
        assert effective_role([]) is None

    def test_unknown_roles_lose_to_known_ones(self) -> None:
        assert effective_role(["janitor", "intern"]) == "intern"

    def test_tie_keeps_first(self) -> None:
        assert effective_role(["janitor", "gardener"]) == "janitor"


class TestComparisons:
    @pytest.mark.parametrize(
        ("role", "minimum", "expected"),
        [
            ("admin", "admin", True),
            ("ceo", "admin", True),
            ("employee", "admin", False),
            ("intern", "employee", False),
            ("janitor", "intern", False),
        ],
    )
    def test_has_role_or_higher(self, role: str, minimum: str, expected: bool) -> None:
        assert has_role_or_higher(role, minimum) is expected

    @pytest.mark.parametrize(
        ("required", "expected"),
        [
            (["super_admin"], True),
            (["admin", "team_lead"], True),
            (["ceo"], True),
            (["cto"], False),
            (["employee"], False),
            ([], False),
        ],
    )
    def test_is_system_check(self, required: list[str], expected: bool) -> None:
        assert is_system_check(required) is expected
