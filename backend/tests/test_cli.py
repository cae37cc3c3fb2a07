"""Tests for the one-shot cleanup CLI."""

from datetime import timedelta

import pytest

from aistudio.cli.cleanup import async_main, parse_args
from aistudio.models.generation_job import GenerationJobStatus


@pytest.fixture
def cli_env(monkeypatch, tmp_path, session_factory):
    """Point the CLI at the test database (tables already created by session_factory)."""
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


def test_parse_args_defaults():
    args = parse_args([])

    assert args.reset is False
    assert args.dry_run is False
    assert args.verbose is False


def test_parse_args_flags():
    args = parse_args(["--reset", "--dry-run", "-v"])

    assert args.reset is True
    assert args.dry_run is True
    assert args.verbose is True


@pytest.mark.asyncio
async def test_scheduled_cleanup(cli_env, seed, uow_factory, load, capsys):
    job = await seed.job(age=timedelta(minutes=3))

    exit_code = await async_main([])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert "Cleanup Summary (scheduled)" in output
    assert "Stuck queued jobs failed: 1" in output

    job = await load.job(uow_factory, job.id)
    assert job.status == GenerationJobStatus.FAILED
    assert job.error == "timeout: stuck in queue"


@pytest.mark.asyncio
async def test_reset_dry_run_changes_nothing(cli_env, seed, uow_factory, load, capsys):
    job = await seed.job(status=GenerationJobStatus.RUNNING)

    exit_code = await async_main(["--reset", "--dry-run"])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert "Cleanup Summary (reset)" in output
    assert "Running jobs without provider id failed: 1" in output
    assert "[DRY RUN]" in output
    assert (await load.job(uow_factory, job.id)).status == GenerationJobStatus.RUNNING


@pytest.mark.asyncio
async def test_database_error_exits_with_1(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")

    exit_code = await async_main([])

    assert exit_code == 1
    assert "Unexpected error" in capsys.readouterr().err
