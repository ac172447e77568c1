"""Shared fixtures: throwaway git repositories and registry files."""

import json
import subprocess
from pathlib import Path

import pytest


def git(repo: Path, *args: str) -> str:
    """Run git in repo and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def commit_file(repo: Path, relpath: str, content: str, message: str = "Update") -> str:
    """Write a file, commit it and return the new HEAD sha."""
    target = repo / relpath
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(repo, "add", relpath)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


def write_registry(root: Path, agents: dict, **extra) -> Path:
    """Write .takt/agents/registry.json and return its path."""
    path = root / ".takt" / "agents" / "registry.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = {"version": "1.0", **extra, "agents": agents}
    path.write_text(json.dumps(doc, indent=2) + "\n")
    return path


def read_registry(project: Path) -> dict:
    return json.loads((project / ".takt" / "agents" / "registry.json").read_text())


@pytest.fixture
def git_repo(tmp_path):
    """Create a git repository on branch main with one commit"""
    repo_path = tmp_path / "project"
    repo_path.mkdir()

    git(repo_path, "init")
    git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "user.name", "Test User")
    git(repo_path, "config", "commit.gpgsign", "false")

    commit_file(repo_path, "README.md", "# Test Repo\n", "Initial commit")
    return repo_path
