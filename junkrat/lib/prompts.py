"""
Prompt template engine for junkrat.

Templates live in prompts/<template-id>.md. Each file starts with a YAML
front-matter block describing the template:

    ---
    id: phase-planner-v1
    name: Phase Planner
    role: phase_planner
    variables: [conversation_state, requirements, min_phases, max_phases]
    user_prompt: |            # optional
      ...
    ---
    <system prompt body>

Placeholders use {{variable_name}} so JSON examples in prompts need no
escaping. Unknown placeholders are left as-is; list values are joined with
", ".

HTML comments (<!-- ... -->) are stripped before rendering - use them for
documentation that shouldn't be sent to the LLM.

The engine is an ordinary object: callers construct one and pass it to the
components that render prompts. Nothing is registered globally.
"""

import logging
import math
import re
import time
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from junkrat.lib.constants import CHARS_PER_TOKEN

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError",
    "PromptRole",
    "PromptTemplate",
    "RenderedPrompt",
    "PromptEngine",
    "load_template_file",
    "render_text",
    "build_section",
    "clear_cache",
    "PROMPTS_DIR",
]

# Pattern to strip HTML comments (including multiline)
_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)
_FRONT_MATTER_PATTERN = re.compile(r'\A---\s*\n(.*?)\n---\s*\n', re.DOTALL)
_PLACEHOLDER_PATTERN = re.compile(r'\{\{(\w+)\}\}')


def _find_repo_root() -> Path:
    """Find repo root by looking for junkrat/ and prompts/ directory markers."""
    current = Path(__file__).resolve().parent
    for _ in range(10):  # Max 10 levels up
        if (current / "junkrat").is_dir() and (current / "prompts").is_dir():
            return current
        parent = current.parent
        if parent == current:  # Hit filesystem root
            break
        current = parent
    raise RuntimeError(
        f"Could not find repo root (looking for junkrat/ and prompts/ directories) "
        f"starting from {Path(__file__).resolve()}"
    )


PROMPTS_DIR = _find_repo_root() / "prompts"


class PromptError(Exception):
    """Raised when prompt loading or rendering fails."""
    pass


class PromptRole(str, Enum):
    REQUIREMENT_GATHERER = "requirement_gatherer"
    REQUIREMENT_ANALYZER = "requirement_analyzer"
    PHASE_PLANNER = "phase_planner"
    SINGLE_PHASE_PLANNER = "single_phase_planner"
    SUMMARIZER = "summarizer"
    TASK_CONFIDENCE = "task_confidence"
    TASK_EXECUTION = "task_execution"


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    name: str
    system_prompt: str
    role: PromptRole | None = None
    user_prompt: str | None = None
    description: str = ""
    variables: tuple[str, ...] = ()


@dataclass(frozen=True)
class RenderedPrompt:
    system_message: str
    user_message: str | None
    role: PromptRole
    template_id: str
    rendered_at: int  # epoch ms
    estimated_tokens: int

    def to_messages(self) -> list[dict[str, str]]:
        """System (and user, if any) messages ready for a ChatRequest."""
        messages = [{"role": "system", "content": self.system_message}]
        if self.user_message:
            messages.append({"role": "user", "content": self.user_message})
        return messages


@lru_cache(maxsize=32)
def load_template_file(path: Path) -> PromptTemplate:
    """
    Load and parse a template file (cached).

    Raises:
        PromptError: If the file is missing or its front matter is invalid
    """
    if not path.exists():
        raise PromptError(f"Prompt template file not found: {path}")

    logger.debug(f"Loading prompt template: {path.name}")
    content = path.read_text()

    match = _FRONT_MATTER_PATTERN.match(content)
    if not match:
        raise PromptError(f"Prompt template {path.name} has no front matter block")

    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise PromptError(f"Invalid front matter in {path.name}: {e}") from e

    if not meta.get("id"):
        raise PromptError(f"Prompt template {path.name} is missing 'id'")

    body = _HTML_COMMENT_PATTERN.sub('', content[match.end():]).strip()
    user_prompt = meta.get("user_prompt")
    if user_prompt is not None:
        user_prompt = _HTML_COMMENT_PATTERN.sub('', user_prompt).strip()

    role_name = meta.get("role")
    try:
        role = PromptRole(role_name) if role_name else None
    except ValueError as e:
        raise PromptError(f"Unknown role '{role_name}' in {path.name}") from e

    return PromptTemplate(
        id=meta["id"],
        name=meta.get("name", meta["id"]),
        system_prompt=body,
        role=role,
        user_prompt=user_prompt,
        description=meta.get("description", ""),
        variables=tuple(meta.get("variables") or ()),
    )


def render_text(template: str, context: dict[str, Any]) -> str:
    """Substitute {{name}} placeholders. Missing or None values stay as-is."""
    def _replace(match: re.Match) -> str:
        value = context.get(match.group(1))
        if value is None:
            return match.group(0)
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        if isinstance(value, Enum):
            return str(value.value)
        return str(value)

    return _PLACEHOLDER_PATTERN.sub(_replace, template)


def build_section(
    content: str | None,
    header: str,
    empty_msg: str | None = None
) -> str:
    """
    Build a prompt section if content exists.

    Returns:
        "header\\ncontent\\n", the empty_msg variant, or "" when both are None.
    """
    if content:
        return f"{header}\n{content}\n"
    elif empty_msg is not None:
        return f"{header}\n{empty_msg}\n"
    else:
        return ""


def clear_cache():
    """Clear the template file cache (useful for testing or hot-reload)."""
    load_template_file.cache_clear()


class PromptEngine:
    """Renders role-specific prompts from named templates."""

    def __init__(self, prompts_dir: Path | None = None, load_defaults: bool = True):
        self._templates: dict[str, PromptTemplate] = {}
        self._defaults: dict[PromptRole, str] = {}
        if load_defaults:
            self.load_directory(prompts_dir or PROMPTS_DIR)

    def load_directory(self, directory: Path) -> int:
        """Register every *.md template in `directory`.

        Templates declaring a role become that role's default. Returns the
        number of templates loaded.
        """
        count = 0
        for path in sorted(directory.glob("*.md")):
            template = load_template_file(path)
            self.register_template(template)
            if template.role is not None:
                self._defaults[template.role] = template.id
            count += 1
        logger.debug(f"Loaded {count} prompt templates from {directory}")
        return count

    def register_template(self, template: PromptTemplate) -> None:
        if not template.id:
            raise PromptError("Template must have an id")
        self._templates[template.id] = template

    def set_default_template(self, role: PromptRole, template_id: str) -> None:
        if template_id not in self._templates:
            raise PromptError(f"Template {template_id} must be registered before use")
        self._defaults[PromptRole(role)] = template_id

    def get_template(self, template_id: str) -> PromptTemplate | None:
        return self._templates.get(template_id)

    def default_template_id(self, role: PromptRole) -> str | None:
        return self._defaults.get(PromptRole(role))

    def render(self, role: PromptRole, **context: Any) -> RenderedPrompt:
        """
        Render the default template for `role`.

        Args:
            role: Which prompt to render
            **context: Template variables

        Raises:
            PromptError: If the role has no template or a declared variable is missing

        Example:
            engine.render(PromptRole.PHASE_PLANNER, conversation_state="GENERATING_PHASES",
                          requirements="...", min_phases=3, max_phases=10)
        """
        role = PromptRole(role)
        template_id = self._defaults.get(role)
        if not template_id:
            raise PromptError(f"No default template registered for role {role.value}")

        template = self._templates.get(template_id)
        if template is None:
            raise PromptError(f"Template {template_id} not found for role {role.value}")

        missing = [v for v in template.variables if v not in context]
        if missing:
            raise PromptError(
                f"Missing required variable(s) {missing} for template {template.id}. "
                f"Provided: {list(context.keys())}"
            )

        system_message = render_text(template.system_prompt, context)
        user_message = render_text(template.user_prompt, context) if template.user_prompt else None
        text = system_message + (user_message or "")

        return RenderedPrompt(
            system_message=system_message,
            user_message=user_message,
            role=role,
            template_id=template.id,
            rendered_at=int(time.time() * 1000),
            estimated_tokens=math.ceil(len(text) / CHARS_PER_TOKEN),
        )
