"""Tests for the funnel loading command."""
from __future__ import annotations

import json

import pytest
from sqlalchemy import select
from typer.testing import CliRunner

import cli
from conftest import EXPERIENCE_ID, GUIDE_LINK, SAMPLE_FLOW, add_funnel
from core.models import Funnel

runner = CliRunner()


@pytest.fixture
def cli_db(session_factory, monkeypatch):
    """Point the CLI at the test database and leave logging alone."""
    monkeypatch.setattr(cli, "get_session", session_factory)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    return session_factory


def _write(tmp_path, data, name="strategy.json"):
    path = tmp_path / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def _funnels(session_factory, experience_id=EXPERIENCE_ID):
    with session_factory() as session:
        rows = session.execute(
            select(Funnel).where(Funnel.experience_id == experience_id).order_by(Funnel.version)
        ).scalars()
        return [
            {
                "name": f.name,
                "version": f.version,
                "is_deployed": f.is_deployed,
                "resources": f.resources,
                "flow": f.flow,
            }
            for f in rows
        ]


class TestLoadFunnel:
    """Loading funnel scripts from JSON files."""

    def test_first_load_is_version_one(self, cli_db, tmp_path):
        path = _write(tmp_path, {"flow": SAMPLE_FLOW, "resources": {"guide": GUIDE_LINK}})

        result = runner.invoke(cli.app, ["load-funnel", str(path), "--experience", EXPERIENCE_ID])

        assert result.exit_code == 0, result.output
        assert "v1" in result.output
        [loaded] = _funnels(cli_db)
        assert loaded["name"] == "strategy"
        assert loaded["version"] == 1
        assert loaded["is_deployed"] is False
        assert loaded["resources"] == {"guide": GUIDE_LINK}
        assert loaded["flow"] == SAMPLE_FLOW

    def test_version_bumps_per_experience(self, cli_db, funnel, tmp_path):
        path = _write(tmp_path, {"flow": SAMPLE_FLOW, "resources": {"guide": GUIDE_LINK}})

        first = runner.invoke(cli.app, ["load-funnel", str(path), "--experience", EXPERIENCE_ID])
        second = runner.invoke(
            cli.app, ["load-funnel", str(path), "--experience", EXPERIENCE_ID, "--name", "Round two"]
        )

        assert first.exit_code == 0, first.output
        assert second.exit_code == 0, second.output
        versions = [(f["name"], f["version"]) for f in _funnels(cli_db)]
        assert versions == [("Strategy session", 1), ("strategy", 2), ("Round two", 3)]

    def test_deploy_undeploys_siblings_only(self, cli_db, funnel, tmp_path):
        other = add_funnel(cli_db, SAMPLE_FLOW, experience_id="exp_other", is_deployed=True)
        path = _write(tmp_path, {"flow": SAMPLE_FLOW, "resources": {"guide": GUIDE_LINK}})

        result = runner.invoke(
            cli.app, ["load-funnel", str(path), "--experience", EXPERIENCE_ID, "--deploy"]
        )

        assert result.exit_code == 0, result.output
        assert "[deployed]" in result.output
        assert [(f["version"], f["is_deployed"]) for f in _funnels(cli_db)] == [(1, False), (2, True)]
        with cli_db() as session:
            assert session.get(Funnel, other).is_deployed is True

    def test_bare_flow_without_resources(self, cli_db, tmp_path):
        path = _write(tmp_path, SAMPLE_FLOW)

        result = runner.invoke(cli.app, ["load-funnel", str(path), "--experience", EXPERIENCE_ID])

        assert result.exit_code == 0, result.output
        assert "unknown resource 'guide'" in result.output
        [loaded] = _funnels(cli_db)
        assert loaded["flow"] == SAMPLE_FLOW
        assert loaded["resources"] == {}

    def test_invalid_script_exits_with_error(self, cli_db, tmp_path):
        path = _write(tmp_path, {"flow": {"blocks": {}}})

        result = runner.invoke(cli.app, ["load-funnel", str(path), "--experience", EXPERIENCE_ID])

        assert result.exit_code == 1
        assert "Invalid funnel" in result.output
        assert _funnels(cli_db) == []
