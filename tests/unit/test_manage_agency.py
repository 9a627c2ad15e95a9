"""Tests for the agency management CLI."""

from __future__ import annotations

import argparse
import uuid
from unittest.mock import MagicMock, patch

import pytest
from scripts.manage_agency import (
    create_agency,
    deactivate_agency,
    grant_role,
    issue_token,
    list_agencies,
)

from buildflow.storage.orm import Agency, User, UserRole


@pytest.fixture()
def mock_session() -> MagicMock:
    """Create a mock sync Session."""
    session = MagicMock()
    session.__enter__ = MagicMock(return_value=session)
    session.__exit__ = MagicMock(return_value=False)
    return session


@pytest.fixture()
def _patch_session(mock_session: MagicMock) -> MagicMock:
    """Patch get_sync_session to return mock."""
    with patch("scripts.manage_agency.get_sync_session", return_value=mock_session):
        yield mock_session


def _result(value: object) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _agency(**overrides: object) -> MagicMock:
    agency = MagicMock(spec=Agency)
    agency.id = uuid.uuid4()
    agency.name = "Acme Builders"
    agency.database_name = "agency_acme"
    agency.is_active = True
    agency.subscription_plan = "basic"
    for key, value in overrides.items():
        setattr(agency, key, value)
    return agency


class TestCreateAgency:
    def test_create_agency(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """create-agency registers the agency with its database name."""
        mock_session.execute.return_value = _result(None)

        args = argparse.Namespace(
            name="Acme Builders",
            database_name="agency_acme",
            domain="acme.example.com",
            plan="pro",
            max_users=25,
        )
        create_agency(args)

        mock_session.add.assert_called_once()
        agency: Agency = mock_session.add.call_args[0][0]
        assert isinstance(agency, Agency)
        assert agency.database_name == "agency_acme"
        assert agency.subscription_plan == "pro"
        assert agency.max_users == 25
        mock_session.commit.assert_called_once()
        assert "Agency created: Acme Builders" in capsys.readouterr().out

    def test_invalid_database_name(self, _patch_session: MagicMock) -> None:
        args = argparse.Namespace(
            name="Bad", database_name="agency;drop", domain=None, plan="basic", max_users=50
        )
        with pytest.raises(SystemExit) as exc_info:
            create_agency(args)
        assert exc_info.value.code == 1
        _patch_session.add.assert_not_called()

    def test_duplicate_database_name(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mock_session.execute.return_value = _result(_agency())
        args = argparse.Namespace(
            name="Acme", database_name="agency_acme", domain=None, plan="basic", max_users=50
        )
        with pytest.raises(SystemExit):
            create_agency(args)
        assert "already exists" in capsys.readouterr().err


class TestListAgencies:
    def test_list_agencies(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mock_session.execute.return_value.scalars.return_value.all.return_value = [
            _agency(),
            _agency(name="Old Co", database_name=None, is_active=False),
        ]
        list_agencies(argparse.Namespace())

        out = capsys.readouterr().out
        assert "1. Acme Builders [agency_acme] basic (active)" in out
        assert "2. Old Co [unmapped] basic (inactive)" in out

    def test_list_empty(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mock_session.execute.return_value.scalars.return_value.all.return_value = []
        list_agencies(argparse.Namespace())
        assert "No agencies found." in capsys.readouterr().out


class TestDeactivateAgency:
    def test_deactivate(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        agency = _agency()
        mock_session.execute.return_value = _result(agency)

        deactivate_agency(argparse.Namespace(database_name="agency_acme"))

        assert agency.is_active is False
        mock_session.commit.assert_called_once()
        assert "Agency deactivated: Acme Builders" in capsys.readouterr().out

    def test_already_inactive(
        self, _patch_session: MagicMock, mock_session: MagicMock
    ) -> None:
        mock_session.execute.return_value = _result(_agency(is_active=False))
        with pytest.raises(SystemExit):
            deactivate_agency(argparse.Namespace(database_name="agency_acme"))
        mock_session.commit.assert_not_called()


class TestGrantRole:
    def test_grant_creates_user_and_role(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        agency = _agency()
        mock_session.execute.side_effect = [
            _result(agency),  # agency lookup
            _result(None),  # user lookup
            _result(None),  # existing role
        ]

        grant_role(
            argparse.Namespace(email="lead@acme.test", role="team_lead", agency="agency_acme")
        )

        added = [c.args[0] for c in mock_session.add.call_args_list]
        assert isinstance(added[0], User)
        assert added[0].email == "lead@acme.test"
        assert isinstance(added[1], UserRole)
        assert added[1].role == "team_lead"
        assert added[1].agency_id == agency.id
        mock_session.commit.assert_called_once()
        out = capsys.readouterr().out
        assert "Role granted: lead@acme.test -> team_lead (agency_acme)" in out

    def test_system_role(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        user = MagicMock(spec=User)
        user.id = uuid.uuid4()
        mock_session.execute.side_effect = [_result(user), _result(None)]

        grant_role(argparse.Namespace(email="root@buildflow.test", role="super_admin", agency=None))

        role: UserRole = mock_session.add.call_args[0][0]
        assert role.agency_id is None
        assert "(system)" in capsys.readouterr().out

    def test_unknown_role(self, _patch_session: MagicMock) -> None:
        with pytest.raises(SystemExit):
            grant_role(argparse.Namespace(email="a@b.test", role="janitor", agency=None))
        _patch_session.execute.assert_not_called()


class TestIssueToken:
    def test_issue_agency_token(
        self,
        _patch_session: MagicMock,
        mock_session: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        user = MagicMock(spec=User)
        user.id = uuid.uuid4()
        user.email = "lead@acme.test"
        agency = _agency()
        mock_session.execute.side_effect = [_result(user), _result(agency)]

        with patch("scripts.manage_agency.TokenCodec") as mock_codec_cls:
            codec = mock_codec_cls.from_settings.return_value
            codec.issue.return_value = "signed.session.token"
            issue_token(argparse.Namespace(email="lead@acme.test", agency="agency_acme"))

        codec.issue.assert_called_once_with(
            user_id=str(user.id),
            email="lead@acme.test",
            agency_id=str(agency.id),
            agency_database="agency_acme",
        )
        assert capsys.readouterr().out.strip() == "signed.session.token"

    def test_inactive_agency_refused(
        self, _patch_session: MagicMock, mock_session: MagicMock
    ) -> None:
        user = MagicMock(spec=User)
        user.id = uuid.uuid4()
        user.email = "lead@acme.test"
        mock_session.execute.side_effect = [_result(user), _result(_agency(is_active=False))]

        with patch("scripts.manage_agency.TokenCodec"), pytest.raises(SystemExit):
            issue_token(argparse.Namespace(email="lead@acme.test", agency="agency_acme"))
