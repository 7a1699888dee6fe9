"""Slash-command routing and the command palette."""

from dataclasses import dataclass
from enum import Enum

from .config import IMAGE_MODELS


class Route(str, Enum):
    KNOWLEDGE = "knowledge"
    IMAGE = "image"
    VIDEO = "video"
    IMPLICIT_IMAGE = "implicit_image"
    CHAT = "chat"


@dataclass(frozen=True)
class Dispatch:
    route: Route
    prompt: str


@dataclass(frozen=True)
class CommandSuggestion:
    label: str
    description: str
    prefix: str


@dataclass(frozen=True)
class PaletteChoice:
    text: str
    rag_mode: bool


RAG_PREFIX = "/rag "
IMAGE_PREFIX = "/image "
VIDEO_PREFIX = "/video "


def dispatch(
    text: str,
    model: str,
    rag_mode: bool = False,
    image_models=IMAGE_MODELS,
) -> Dispatch:
    """Pick the handling path for outgoing input.

    Rules are checked in order; the first match wins. Unknown slash
    prefixes are plain chat.
    """
    if text.startswith(RAG_PREFIX) or rag_mode:
        prompt = text[len(RAG_PREFIX):] if text.startswith(RAG_PREFIX) else text
        return Dispatch(Route.KNOWLEDGE, prompt)
    if text.startswith(IMAGE_PREFIX):
        return Dispatch(Route.IMAGE, text[len(IMAGE_PREFIX):])
    if text.startswith(VIDEO_PREFIX):
        return Dispatch(Route.VIDEO, text[len(VIDEO_PREFIX):])
    if model in image_models:
        return Dispatch(Route.IMPLICIT_IMAGE, text)
    return Dispatch(Route.CHAT, text)


SUGGESTIONS = (
    CommandSuggestion("Generate Image", "Create an image from text", "/image"),
    CommandSuggestion("Generate Video", "Create a video from text", "/video"),
    CommandSuggestion("Import Figma", "Import a design from Figma", "/figma"),
    CommandSuggestion("Create Page", "Generate a new web page", "/page"),
    CommandSuggestion("Improve", "Improve existing UI design", "/improve"),
    CommandSuggestion("Search Knowledge Base", "Query the knowledge base", "/rag"),
)


class CommandPalette:
    """Autocompletion over the fixed command prefixes.

    Purely an input helper: dispatch() re-derives the route from the
    submitted text and never looks at palette state.
    """

    def __init__(self, suggestions=SUGGESTIONS):
        self.suggestions = tuple(suggestions)

    def is_open(self, text: str) -> bool:
        return text.startswith("/") and " " not in text

    def matches(self, text: str) -> list[CommandSuggestion]:
        if not self.is_open(text):
            return []
        return [s for s in self.suggestions if s.prefix.startswith(text)]

    def select(self, prefix: str) -> PaletteChoice:
        for s in self.suggestions:
            if s.prefix == prefix:
                return PaletteChoice(text=f"{s.prefix} ", rag_mode=s.prefix == "/rag")
        raise KeyError(prefix)
