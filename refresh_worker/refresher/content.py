"""Content states for the per-category content fields.

In memory a category's content is always one of three states:

- ``Placeholder``: the user has no items selected for the category.
- ``Error(reason)``: a collaborator call failed for the category.
- ``Content(text)``: substantive text.

The store only holds text, so the states are encoded to (and decoded from)
the sentinel strings the dashboard already understands. ``encode`` and
``decode`` are the only places that know about those strings. An error
sentinel is always a single line, so multi-line text that happens to open
with the error phrase is agent output and decodes as content.
"""

from dataclasses import dataclass
from enum import StrEnum

PLACEHOLDER_MESSAGE = "Please Select A Preference To View Personalized News Here"
ERROR_PREFIX = "Error fetching"


class ContentKind(StrEnum):
    placeholder = "placeholder"
    error = "error"
    content = "content"


@dataclass(frozen=True)
class ContentState:
    kind: ContentKind
    text: str = ""

    @classmethod
    def placeholder(cls) -> "ContentState":
        return cls(ContentKind.placeholder)

    @classmethod
    def error(cls, reason: str) -> "ContentState":
        return cls(ContentKind.error, reason)

    @classmethod
    def content(cls, text: str) -> "ContentState":
        return cls(ContentKind.content, text)

    @property
    def is_content(self) -> bool:
        return self.kind == ContentKind.content

    @property
    def is_placeholder(self) -> bool:
        return self.kind == ContentKind.placeholder

    @property
    def is_error(self) -> bool:
        return self.kind == ContentKind.error

    def encode(self) -> str:
        """Render the state as the text stored in the content column."""
        if self.kind == ContentKind.placeholder:
            return PLACEHOLDER_MESSAGE
        if self.kind == ContentKind.error:
            return f"{ERROR_PREFIX} {' '.join(self.text.split())}"
        return self.text

    @classmethod
    def decode(cls, raw: str | None) -> "ContentState | None":
        """Parse a stored content column. Returns None if never populated."""
        if raw is None or not raw.strip():
            return None
        if raw == PLACEHOLDER_MESSAGE:
            return cls.placeholder()
        if raw.startswith(ERROR_PREFIX + " ") and "\n" not in raw:
            return cls.error(raw[len(ERROR_PREFIX):].strip())
        return cls.content(raw)


def is_deliverable(raw: str | None) -> bool:
    """True if a stored content column holds substantive text."""
    state = ContentState.decode(raw)
    return state is not None and state.is_content
