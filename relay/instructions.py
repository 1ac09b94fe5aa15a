"""
Instructions sent to the realtime service.

Prompts are stored as YAML under relay/prompts (PyYAML safe_load also
accepts pure JSON). Resolution order for a prompt name:
<name>.yaml, <name>.yml, <name>.json, then default.*, then the
hard-coded fallback below.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import yaml


BASE_INSTRUCTIONS = """
You are a voice assistant for GitHub repository management.
Help users manage their GitHub repositories through voice commands.
Convert natural language requests into appropriate function calls.
Always confirm what actions you're taking and provide helpful feedback.
""".strip()

PROJECT_CONTEXT_TEMPLATE = """
You are controlling GitHub for repository: {project}
Repository: {full_name}
URL: {url}
Available commands: {tool_names}

Always be helpful and confirm what actions you're taking.
""".strip()


def _get_prompts_dir() -> Path:
    return Path(__file__).parent / "prompts"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Prompt file {path} must contain a mapping at top-level")
        return data


def load_prompt(name: str = "default") -> Dict[str, Any]:
    prompts_dir = _get_prompts_dir()

    for candidate_name in (name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = prompts_dir / f"{candidate_name}{suffix}"
            if candidate.exists():
                return _load_file(candidate)

    return {
        "name": "default",
        "instructions": BASE_INSTRUCTIONS,
        "project_context": PROJECT_CONTEXT_TEMPLATE,
    }


def get_instructions(prompt_name: str = "default") -> str:
    """Behavioural instructions for a fresh realtime session."""
    prompt = load_prompt(prompt_name)
    return str(prompt.get("instructions") or BASE_INSTRUCTIONS).strip()


def get_project_instructions(
    project: str,
    status: Mapping[str, Any],
    tool_names: Iterable[str],
    prompt_name: str = "default",
) -> str:
    """
    Instructions describing a newly selected repository.

    status is the collaborator's project status ({fullName, url, ...});
    missing fields fall back to the project name / "unknown".
    """
    prompt = load_prompt(prompt_name)
    template = str(prompt.get("project_context") or PROJECT_CONTEXT_TEMPLATE)
    return template.format(
        project=project,
        full_name=status.get("fullName") or project,
        url=status.get("url") or "unknown",
        tool_names=", ".join(tool_names),
    ).strip()
