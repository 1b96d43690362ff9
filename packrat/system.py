"""System prompt generation from the bundled template and the command table."""

from pathlib import Path

from .commands import COMMANDS

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.md"


def _command_section(name: str, cls) -> str:
    return (
        f"### {name}\n{cls.help}\n\n"
        f"Example:\n#### [{cls.label}]({name})\n{cls.example}"
    )


def generate_system_prompt(template_path: str | Path | None = None) -> str:
    """Fill the template placeholders with the command list and their docs."""
    path = Path(template_path) if template_path else DEFAULT_SYSTEM_PROMPT_FILE
    template = path.read_text(encoding="utf-8")
    tools_md = "\n\n".join(_command_section(n, c) for n, c in COMMANDS.items())
    return template.replace("<!--TOOLS_LIST-->", ", ".join(COMMANDS)).replace(
        "<!--TOOLS_MD-->", tools_md
    )
