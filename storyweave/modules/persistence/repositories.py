from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from storyweave.config import stories_root
from storyweave.modules.persistence.file_utils import directory_exists, list_directories, list_files
from storyweave.modules.persistence.json_store import EntityNotFoundError, LockingJsonStore
from storyweave.modules.persistence.lock_manager import LockManager
from storyweave.modules.state.active_state import ActiveState
from storyweave.modules.state.character_state import merge_canon_facts, merge_character_canon_facts
from storyweave.modules.state.tagged_entry import StateCategory, parse_tagged_entry

logger = logging.getLogger(__name__)

_PAGE_FILE_RE = re.compile(r"^page_(\d+)\.json$")


class InvalidEntityError(ValueError):
    """Raised when a stored document fails model validation."""


class EntityIdMismatchError(ValueError):
    """Raised when a loaded document carries a different id than requested."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Story(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    premise: str = ""
    global_canon: list[str] = Field(default_factory=list)
    global_character_canon: dict[str, list[str]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def validate_id(self):
        story_id = str(self.id or "").strip()
        if not story_id or "/" in story_id or "\\" in story_id or story_id in {".", ".."}:
            raise ValueError(f"invalid story id: {self.id!r}")
        self.id = story_id
        return self


class PageChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1)
    choice_type: str | None = None
    primary_delta: str | None = None
    next_page_id: int | None = Field(default=None, ge=1)


class Page(BaseModel):
    """One immutable page snapshot.

    Threats, constraints and threads are stored in their tagged wire form
    (``"THREAT_1: ..."``); :attr:`active_state` decodes them.
    """

    model_config = ConfigDict(extra="forbid")

    id: int = Field(ge=1)
    story_id: str = Field(min_length=1)
    parent_page_id: int | None = None
    parent_choice_index: int | None = Field(default=None, ge=0)
    narrative: str = Field(min_length=1)
    choices: list[PageChoice] = Field(default_factory=list)
    is_ending: bool = False

    current_location: str = ""
    active_threats: list[str] = Field(default_factory=list)
    active_constraints: list[str] = Field(default_factory=list)
    open_threads: list[str] = Field(default_factory=list)
    entry_tags: dict[str, dict[str, str]] = Field(default_factory=dict)
    accumulated_inventory: list[str] = Field(default_factory=list)
    accumulated_health: list[str] = Field(default_factory=list)
    accumulated_state: list[str] = Field(default_factory=list)
    accumulated_character_state: dict[str, list[str]] = Field(default_factory=dict)

    beat_concluded: bool = False
    beat_resolution: str = ""
    narrative_summary: str = ""
    deviation: dict = Field(default_factory=lambda: {"detected": False})
    diagnostics: list[dict[str, str]] = Field(default_factory=list)
    raw_response: str = ""
    created_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def validate_page(self):
        if self.is_ending and self.choices:
            raise ValueError("ending page must not offer choices")
        if (self.parent_page_id is None) != (self.parent_choice_index is None):
            raise ValueError("parent_page_id and parent_choice_index must be set together")
        for field_name, category in (
            ("active_threats", StateCategory.THREAT),
            ("active_constraints", StateCategory.CONSTRAINT),
            ("open_threads", StateCategory.THREAD),
        ):
            for raw in getattr(self, field_name):
                entry = parse_tagged_entry(raw)
                if entry is None or entry.category != category:
                    raise ValueError(f"{field_name} holds an invalid entry: {raw!r}")
        return self

    @property
    def active_state(self) -> ActiveState:
        def decode(values: list[str]):
            return tuple(entry for entry in map(parse_tagged_entry, values) if entry is not None)

        return ActiveState(
            current_location=self.current_location,
            active_threats=decode(self.active_threats),
            active_constraints=decode(self.active_constraints),
            open_threads=decode(self.open_threads),
        )


def _validate(model: type[BaseModel], payload: object, source: str):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidEntityError(f"Invalid {model.__name__.lower()} payload at {source}: {exc}") from exc


class StoryRepository:
    def __init__(self, root: Path | None = None, *, locks: LockManager | None = None) -> None:
        self._root_override = root
        self._store = LockingJsonStore(lambda story_id: self.story_dir(story_id) / "story.json", locks=locks)

    @property
    def root(self) -> Path:
        return self._root_override or stories_root()

    @property
    def locks(self) -> LockManager:
        return self._store.locks

    def story_dir(self, story_id: str) -> Path:
        return self.root / story_id

    async def save(self, story: Story) -> None:
        await self._store.write(story.id, story.model_dump(mode="json"))

    async def save_if_missing(self, story: Story) -> bool:
        return await self._store.create(story.id, story.model_dump(mode="json"))

    async def load(self, story_id: str) -> Story | None:
        payload = await self._store.read(story_id)
        if payload is None:
            return None
        story = _validate(Story, payload, str(self._store.path_for(story_id)))
        if story.id != story_id:
            raise EntityIdMismatchError(f"Story ID mismatch: expected {story_id}, found {story.id}")
        return story

    async def exists(self, story_id: str) -> bool:
        return await self._store.exists(story_id)

    async def update(self, story_id: str, updater: Callable[[Story], Story]) -> Story:
        source = str(self._store.path_for(story_id))

        def _apply(payload: object) -> dict:
            current = _validate(Story, payload, source)
            updated = updater(current).model_copy(update={"updated_at": _utc_now()})
            return _validate(Story, updated.model_dump(mode="json"), source).model_dump(mode="json")

        try:
            payload = await self._store.update(story_id, _apply)
        except EntityNotFoundError as exc:
            raise EntityNotFoundError(f"Story not found: {story_id}") from exc
        return Story.model_validate(payload)

    async def update_canon(
        self,
        story_id: str,
        world_facts: list[str],
        character_facts: Mapping[str, list[str]],
    ) -> Story:
        def _merge(story: Story) -> Story:
            return story.model_copy(
                update={
                    "global_canon": merge_canon_facts(story.global_canon, world_facts),
                    "global_character_canon": merge_character_canon_facts(
                        story.global_character_canon,
                        character_facts,
                    ),
                }
            )

        return await self.update(story_id, _merge)

    async def list_ids(self) -> list[str]:
        if not await directory_exists(self.root):
            return []
        return await list_directories(self.root)


class PageRepository:
    """Pages live next to their story; every page write holds the story's lock."""

    def __init__(self, root: Path | None = None, *, locks: LockManager | None = None) -> None:
        self._root_override = root
        self._store = LockingJsonStore(
            self._page_path,
            lock_key_fn=lambda key: key.split("/", 1)[0],
            locks=locks,
        )

    @property
    def root(self) -> Path:
        return self._root_override or stories_root()

    @staticmethod
    def _key(story_id: str, page_id: int) -> str:
        return f"{story_id}/{int(page_id)}"

    def _page_path(self, key: str) -> Path:
        story_id, page_id = key.split("/", 1)
        return self.root / story_id / f"page_{page_id}.json"

    async def save(self, page: Page) -> None:
        await self._store.write(self._key(page.story_id, page.id), page.model_dump(mode="json"))

    async def load(self, story_id: str, page_id: int) -> Page | None:
        key = self._key(story_id, page_id)
        payload = await self._store.read(key)
        if payload is None:
            return None
        page = _validate(Page, payload, str(self._store.path_for(key)))
        if page.id != page_id or page.story_id != story_id:
            raise EntityIdMismatchError(
                f"Page ID mismatch: expected {story_id}/{page_id}, found {page.story_id}/{page.id}"
            )
        return page

    async def exists(self, story_id: str, page_id: int) -> bool:
        return await self._store.exists(self._key(story_id, page_id))

    async def list_ids(self, story_id: str) -> list[int]:
        names = await list_files(self.root / story_id, _PAGE_FILE_RE)
        return sorted(int(_PAGE_FILE_RE.match(name).group(1)) for name in names)

    async def max_page_id(self, story_id: str) -> int:
        ids = await self.list_ids(story_id)
        return ids[-1] if ids else 0

    async def update_choice_link(self, story_id: str, page_id: int, choice_index: int, next_page_id: int) -> Page:
        key = self._key(story_id, page_id)
        source = str(self._store.path_for(key))

        def _link(payload: object) -> dict:
            page = _validate(Page, payload, source)
            return _with_choice_link(page, choice_index, next_page_id).model_dump(mode="json")

        try:
            payload = await self._store.update(key, _link)
        except EntityNotFoundError as exc:
            raise EntityNotFoundError(f"Page {page_id} not found in story {story_id}") from exc
        return Page.model_validate(payload)

    async def commit_opening(self, story_id: str, build: Callable[[int], Page]) -> tuple[Page, bool]:
        """Save page 1 unless it already exists. Returns ``(page, created)``."""

        async def _commit() -> tuple[Page, bool]:
            existing = await self.load(story_id, 1)
            if existing is not None:
                return existing, False
            page = build(1)
            await self._store.write_unlocked(self._key(story_id, page.id), page.model_dump(mode="json"))
            logger.info("story %s: opening page created", story_id)
            return page, True

        return await self._store.locks.run_with_lock(self._store.lock_key(self._key(story_id, 0)), _commit)

    async def commit_child(
        self,
        story_id: str,
        parent_page_id: int,
        choice_index: int,
        build: Callable[[int], Page],
    ) -> tuple[Page, bool]:
        """Allocate the next page id, save the child and link the parent choice.

        Runs entirely under the story lock. Returns ``(page, created)``; when
        the choice was already linked by a concurrent call the existing child
        is returned with ``created=False``.
        """

        async def _commit() -> tuple[Page, bool]:
            parent = await self.load(story_id, parent_page_id)
            if parent is None:
                raise EntityNotFoundError(f"Page {parent_page_id} not found in story {story_id}")
            _check_choice_index(parent, choice_index)
            linked = parent.choices[choice_index].next_page_id
            if linked is not None:
                existing = await self.load(story_id, linked)
                if existing is not None:
                    return existing, False

            page_id = await self.max_page_id(story_id) + 1
            page = build(page_id)
            await self._store.write_unlocked(self._key(story_id, page.id), page.model_dump(mode="json"))
            linked_parent = _with_choice_link(parent, choice_index, page.id)
            await self._store.write_unlocked(
                self._key(story_id, parent.id),
                linked_parent.model_dump(mode="json"),
            )
            logger.info("story %s: page %s created from page %s choice %s", story_id, page.id, parent.id, choice_index)
            return page, True

        return await self._store.locks.run_with_lock(self._store.lock_key(self._key(story_id, 0)), _commit)


def _check_choice_index(page: Page, choice_index: int) -> None:
    if not isinstance(choice_index, int) or choice_index < 0 or choice_index >= len(page.choices):
        raise IndexError(f"Invalid choice index {choice_index} for page {page.id}")


def _with_choice_link(page: Page, choice_index: int, next_page_id: int) -> Page:
    _check_choice_index(page, choice_index)
    choices = list(page.choices)
    choices[choice_index] = choices[choice_index].model_copy(update={"next_page_id": next_page_id})
    return page.model_copy(update={"choices": choices})


__all__ = [
    "InvalidEntityError",
    "EntityIdMismatchError",
    "EntityNotFoundError",
    "Story",
    "PageChoice",
    "Page",
    "StoryRepository",
    "PageRepository",
]
