"""Render prompt templates for worker agents."""

from pathlib import Path
from string import Template

from .config import Phase
from .github import Issue

_PROMPTS_DIR = Path(__file__).parent / "prompts"


def render_prompt(
    phase: Phase,
    issue: Issue,
    *,
    repo: str,
    labels: dict[str, str],
    branch: str = "",
    plan: str = "",
    pr_number: int | None = None,
) -> str:
    """Render the prompt template for one phase of one issue."""
    template_path = _PROMPTS_DIR / f"{phase}.md"
    if not template_path.exists():
        raise FileNotFoundError(
            f"No prompt template for phase '{phase}' at {template_path}"
        )

    template = Template(template_path.read_text())
    return template.safe_substitute(
        issue_number=issue.number,
        issue_title=issue.title,
        issue_body=issue.body or "(No description provided)",
        issue_url=issue.url,
        repo=repo,
        branch=branch,
        approved_plan=plan,
        pr_number="" if pr_number is None else pr_number,
        **{f"{key}_label": name for key, name in labels.items()},
    )
