"""CLI commands for running the task-to-merged-pull-request pipeline."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from pydantic import ValidationError

from .context import ContextProvider, StaticContextProvider
from .errors import GitError
from .models import LLMClient, LLMClientError, ResponsesClient
from .orchestrator import PipelineOrchestrator
from .report import render_markdown, render_plan
from .schema import DEFAULT_PROTECTED_PATTERNS, ExecutionPlan, PipelineConfig
from .state import PipelineState
from .tools.github import GhCliGateway, PullRequestGateway
from .tools.vcs import VersionControlDriver

APP_HELP = "Turn a task description into a reviewed, CI-verified and merged pull request."
DEFAULT_CONFIG_NAME = "fullcycle.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "repo_root": ".",
    },
    "pipeline": {
        "max_review_iterations": 10,
        "max_ci_retries": 5,
        "max_compilation_attempts": 3,
        "max_test_attempts": 2,
        "auto_merge": True,
        "require_ci_pass": True,
        "run_local_tests": True,
        "protected_patterns": list(DEFAULT_PROTECTED_PATTERNS),
    },
    "commands": {
        "build": "",
        "test": "",
    },
    "git": {
        "remote": "origin",
        "base_branch": "main",
        "branch_prefix": "feature/ai-",
        "merge_strategy": "squash",
        "auto_resolve_conflicts": True,
    },
    "ci": {
        "poll_interval": 15,
        "wait_timeout": 300,
    },
    "review": {
        "force_approve_stuck": True,
    },
    "models": {
        "default": "gpt-5-mini",
        "temperature": 0.3,
        "max_tokens": 4096,
        "rate_limit_delays": [30, 60],
        "timeout": 150,
    },
    "context": {
        "top_k": 5,
        "min_similarity": 0.3,
        "files": ["README.md"],
    },
    "paths": {
        "logs": "data/logs",
    },
}

app = typer.Typer(help=APP_HELP)


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _resolve_repo_root(config: Dict[str, Any], config_path: Path) -> Path:
    """Resolve the repository root from configuration."""
    project_cfg = config.get("project") or {}
    repo_root_path = Path(str(project_cfg.get("repo_root") or "."))
    if not repo_root_path.is_absolute():
        repo_root_path = (config_path.parent / repo_root_path).resolve()
    return repo_root_path


def _pipeline_config(config: Dict[str, Any], repo_root: Path, **overrides: Any) -> PipelineConfig:
    """Validate the configuration mapping; invalid values exit with code 1."""
    try:
        pipeline_config = PipelineConfig.from_config(config)
    except ValidationError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error

    updates = {key: value for key, value in overrides.items() if value is not None}
    artifacts_dir = pipeline_config.artifacts_dir
    if artifacts_dir and not Path(artifacts_dir).is_absolute():
        updates["artifacts_dir"] = str(repo_root / artifacts_dir)
    return pipeline_config.model_copy(update=updates) if updates else pipeline_config


def _build_client(config: Dict[str, Any]) -> LLMClient:
    """Create the Responses API client from the ``models`` section."""
    models_cfg = config.get("models") or {}
    client_kwargs: Dict[str, Any] = {"model": str(models_cfg.get("default") or "gpt-5-mini")}
    timeout_value = models_cfg.get("timeout")
    if isinstance(timeout_value, (int, float)) and timeout_value > 0:
        client_kwargs["timeout"] = float(timeout_value)
    base_url_value = models_cfg.get("base_url")
    if isinstance(base_url_value, str) and base_url_value.strip():
        client_kwargs["base_url"] = base_url_value.strip()
    api_key_value = models_cfg.get("api_key")
    if isinstance(api_key_value, str) and api_key_value.strip():
        client_kwargs["api_key"] = api_key_value.strip()
    try:
        return ResponsesClient(**client_kwargs)
    except ValueError as error:
        if "api key" in str(error).lower():
            typer.echo("No API key given. Set OPENAI_API_KEY or FULLCYCLE_API_KEY.")
        else:
            typer.echo(f"Failed to initialise the model client: {error}")
        raise typer.Exit(code=1) from error
    except LLMClientError as error:
        typer.echo(f"Failed to initialise the model client: {error}")
        raise typer.Exit(code=1) from error


def _context_provider(config: Dict[str, Any], repo_root: Path) -> Optional[ContextProvider]:
    """Serve the configured ``context.files`` as the retrieved project context."""
    context_cfg = config.get("context") or {}
    blocks: List[str] = []
    for entry in context_cfg.get("files") or []:
        path = repo_root / str(entry)
        if path.is_file():
            blocks.append(f"### {entry}\n{path.read_text(encoding='utf-8', errors='replace')}")
    return StaticContextProvider("\n\n".join(blocks)) if blocks else None


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def _echo_state(state: PipelineState) -> None:
    typer.echo(f"[state] {state.stage.value}")


def _confirm_interactively(plan: ExecutionPlan) -> bool:
    return typer.confirm("Apply this plan?", default=True)


def _orchestrator(
    config_data: Dict[str, Any],
    config_path: Path,
    *,
    verbose: bool,
    needs_remote: bool = True,
    **overrides: Any,
) -> PipelineOrchestrator:
    repo_root = _resolve_repo_root(config_data, config_path)
    pipeline_config = _pipeline_config(config_data, repo_root, **overrides)
    vcs = VersionControlDriver(repo_root)
    gateway = PullRequestGateway()
    if needs_remote:
        try:
            repo = vcs.repository_ref(pipeline_config.remote)
        except GitError as error:
            typer.echo(f"Cannot determine the GitHub repository: {error}")
            raise typer.Exit(code=1) from error
        gateway = GhCliGateway(repo_root, repo)
    return PipelineOrchestrator(
        _build_client(config_data),
        vcs,
        gateway,
        pipeline_config,
        context_provider=_context_provider(config_data, repo_root),
        on_progress=typer.echo,
        on_state_change=_echo_state if verbose else None,
    )


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; use --force to overwrite it.")
        raise typer.Exit(code=1)
    _write_config(config_path, _copy_config_template())
    typer.echo(f"Wrote default configuration to {config_path}.")


@app.command()
def plan(
    task: List[str] = typer.Argument(..., help="Task description."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Print the execution plan for a task without changing anything."""
    _configure_logging(verbose)
    config_path = Path(config)
    config_data = load_config(config_path)
    orchestrator = _orchestrator(config_data, config_path, verbose=verbose, needs_remote=False)
    execution_plan = orchestrator.plan(" ".join(task))
    for line in render_plan(execution_plan):
        typer.echo(line)


@app.command()
def run(
    task: List[str] = typer.Argument(..., help="Task description."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    auto: bool = typer.Option(False, "--auto", help="Apply the plan without asking for confirmation."),
    no_merge: bool = typer.Option(False, "--no-merge", help="Leave the pull request open instead of merging."),
    no_ci: bool = typer.Option(False, "--no-ci", help="Do not wait for remote CI."),
    no_tests: bool = typer.Option(False, "--no-tests", help="Skip local tests."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write a markdown report to this file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run the full pipeline for a task."""
    _configure_logging(verbose)
    config_path = Path(config)
    config_data = load_config(config_path)
    orchestrator = _orchestrator(
        config_data,
        config_path,
        verbose=verbose,
        auto_merge=False if no_merge else None,
        require_ci_pass=False if no_ci else None,
        run_local_tests=False if no_tests else None,
    )
    report = orchestrator.run(" ".join(task), None if auto else _confirm_interactively)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(render_markdown(report), encoding="utf-8")
        typer.echo(f"Report written to {output}.")
    if not report.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
