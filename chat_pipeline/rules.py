"""Standing rules that travel with every prompt."""

from pydantic import BaseModel


class Rule(BaseModel):
    """A named requirement; ``key`` defaults to ``name`` when recorded."""

    name: str
    requirement: str
    key: str | None = None


CODE_BLOCK_RULE = Rule(
    name="Code Block Formatting",
    requirement=(
        "All code blocks must adhere to the following format for consistency "
        "and clarity: ```{lang}\n{content}```"
    ),
)
