from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from storyweave.config import settings
from storyweave.modules.llm.prompts import (
    PromptEnvelope,
    build_analyst_envelope,
    build_planner_envelope,
    build_writer_envelope,
)
from storyweave.modules.llm.result_merger import (
    AnalystResult,
    PageGenerationResult,
    PageWriterResult,
    merge_page_writer_and_reconciled_state_with_analyst_results,
)
from storyweave.modules.llm.runtime.chat_completions_client import StageRequest
from storyweave.modules.llm.runtime.parsers import (
    PagePlan,
    parse_analyst_output,
    parse_planner_output,
    parse_writer_output,
)
from storyweave.modules.llm.runtime.progress import (
    STAGE_COMPLETED,
    STAGE_STARTED,
    GenerationStage,
    StageEmitter,
    emit_stage,
)
from storyweave.modules.llm.runtime.stage_runner import StageResult, run_stage
from storyweave.modules.persistence.json_store import EntityNotFoundError
from storyweave.modules.persistence.repositories import Page, PageChoice, PageRepository, Story, StoryRepository
from storyweave.modules.reconcile.reconciler import (
    StateReconciliationPreviousState,
    StateReconciliationResult,
    reconcile_state,
)
from storyweave.modules.state.active_state import ActiveState, ActiveStateChanges, apply_active_state_changes
from storyweave.modules.state.appliers import (
    StateChanges,
    apply_health_changes,
    apply_inventory_changes,
    apply_state_changes,
)
from storyweave.modules.state.character_state import apply_character_state_changes
from storyweave.modules.state.diagnostics import DiagnosticsCollector
from storyweave.modules.state.tagged_entry import (
    StateCategory,
    TaggedStateEntry,
    encode_tagged_entry,
    next_prefix_number,
)

logger = logging.getLogger(__name__)

StageRunner = Callable[..., Awaitable[StageResult]]


@dataclass(frozen=True, slots=True)
class PageOutcome:
    page: Page
    story: Story
    was_generated: bool
    result: PageGenerationResult | None = None


def _encode_additions(
    category: StateCategory,
    texts: list[str],
    existing: tuple[TaggedStateEntry, ...],
) -> list[str]:
    prefixes = [entry.prefix for entry in existing]
    raws: list[str] = []
    for text in texts:
        number = next_prefix_number(category, prefixes)
        prefixes.append(f"{category.value}_{number}")
        raws.append(encode_tagged_entry(category, number, text))
    return raws


def _entry_tags(
    parent: Page | None,
    active: ActiveState,
    added: dict[str, dict[str, str]],
) -> dict[str, dict[str, str]]:
    tags = dict(parent.entry_tags) if parent is not None else {}
    tags.update(added)
    live = {entry.prefix for entry in (*active.active_threats, *active.active_constraints, *active.open_threads)}
    return {prefix: value for prefix, value in tags.items() if prefix in live}


def build_page(
    page_id: int,
    story_id: str,
    parent: Page | None,
    choice_index: int | None,
    result: PageGenerationResult,
) -> Page:
    """Fold a generation result into the parent's snapshot to produce the child page.

    Pure: the parent page is never modified. Applier diagnostics are recorded
    after the reconciliation diagnostics.
    """
    state = result.state
    diagnostics = DiagnosticsCollector(state.reconciliation_diagnostics)
    previous = parent.active_state if parent is not None else ActiveState()

    threat_raws = _encode_additions(
        StateCategory.THREAT, [entry.text for entry in state.threats_added], previous.active_threats
    )
    constraint_raws = _encode_additions(
        StateCategory.CONSTRAINT, [entry.text for entry in state.constraints_added], previous.active_constraints
    )
    thread_raws = _encode_additions(
        StateCategory.THREAD, [entry.text for entry in state.threads_added], previous.open_threads
    )

    added_tags: dict[str, dict[str, str]] = {}
    for raw, entry in zip(threat_raws, state.threats_added):
        added_tags[raw.split(":", 1)[0]] = {"threatType": entry.to_dict()["threatType"]}
    for raw, entry in zip(constraint_raws, state.constraints_added):
        added_tags[raw.split(":", 1)[0]] = {"constraintType": entry.to_dict()["constraintType"]}
    for raw, entry in zip(thread_raws, state.threads_added):
        payload = entry.to_dict()
        added_tags[raw.split(":", 1)[0]] = {"threadType": payload["threadType"], "urgency": payload["urgency"]}

    active = apply_active_state_changes(
        previous,
        ActiveStateChanges(
            new_location=state.current_location or None,
            threats_added=tuple(threat_raws),
            threats_removed=tuple(state.threats_removed),
            constraints_added=tuple(constraint_raws),
            constraints_removed=tuple(state.constraints_removed),
            threads_added=tuple(thread_raws),
            threads_resolved=tuple(state.threads_resolved),
        ),
        diagnostics,
    )
    inventory = apply_inventory_changes(
        parent.accumulated_inventory if parent is not None else (),
        StateChanges(added=tuple(state.inventory_added), removed=tuple(state.inventory_removed)),
        diagnostics,
    )
    health = apply_health_changes(
        parent.accumulated_health if parent is not None else (),
        StateChanges(added=tuple(state.health_added), removed=tuple(state.health_removed)),
        diagnostics,
    )
    accumulated = apply_state_changes(
        parent.accumulated_state if parent is not None else (),
        StateChanges(added=tuple(state.state_changes_added), removed=tuple(state.state_changes_removed)),
        diagnostics,
    )
    character_state = apply_character_state_changes(
        parent.accumulated_character_state if parent is not None else {},
        state.character_state_changes_added,
        state.character_state_changes_removed,
        diagnostics,
    )

    return Page(
        id=page_id,
        story_id=story_id,
        parent_page_id=parent.id if parent is not None else None,
        parent_choice_index=choice_index if parent is not None else None,
        narrative=result.narrative,
        choices=[
            PageChoice(text=choice.text, choice_type=choice.choice_type, primary_delta=choice.primary_delta)
            for choice in result.choices
        ],
        is_ending=result.is_ending,
        current_location=active.current_location,
        active_threats=[entry.raw for entry in active.active_threats],
        active_constraints=[entry.raw for entry in active.active_constraints],
        open_threads=[entry.raw for entry in active.open_threads],
        entry_tags=_entry_tags(parent, active, added_tags),
        accumulated_inventory=list(inventory),
        accumulated_health=list(health),
        accumulated_state=list(accumulated),
        accumulated_character_state=character_state,
        beat_concluded=result.beat_concluded,
        beat_resolution=result.beat_resolution,
        narrative_summary=result.narrative_summary,
        deviation=result.deviation.to_dict(),
        diagnostics=diagnostics.to_list(),
        raw_response=result.raw_response,
    )


def page_state_snapshot(page: Page | None) -> dict:
    if page is None:
        return {}
    return {
        "currentLocation": page.current_location,
        "activeThreats": list(page.active_threats),
        "activeConstraints": list(page.active_constraints),
        "openThreads": list(page.open_threads),
        "inventory": list(page.accumulated_inventory),
        "health": list(page.accumulated_health),
        "accumulatedState": list(page.accumulated_state),
        "characterState": {name: list(states) for name, states in page.accumulated_character_state.items()},
    }


class PageService:
    def __init__(
        self,
        stories: StoryRepository,
        pages: PageRepository,
        *,
        stage_runner: StageRunner = run_stage,
        stage_emitter: StageEmitter | None = None,
    ) -> None:
        self._stories = stories
        self._pages = pages
        self._stage_runner = stage_runner
        self._stage_emitter = stage_emitter

    def _request(self, stage: GenerationStage, envelope: PromptEnvelope, api_key: str | None) -> StageRequest:
        return StageRequest(
            model=settings.stage_model(stage.value),
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            messages=envelope.to_messages(),
            response_format=envelope.response_format(),
            api_key=api_key or settings.llm_api_key,
        )

    async def _run(self, stage: GenerationStage, envelope: PromptEnvelope, parser, api_key: str | None) -> StageResult:
        return await self._stage_runner(
            stage.value,
            self._request(stage, envelope, api_key),
            parser,
            stage_emitter=self._stage_emitter,
        )

    async def _plan_and_write(
        self,
        story: Story,
        parent: Page | None,
        choice_text: str,
        api_key: str | None,
    ) -> tuple[PagePlan, PageWriterResult]:
        snapshot = page_state_snapshot(parent)
        previous_narrative = parent.narrative if parent is not None else ""
        planned = await self._run(
            GenerationStage.PLANNER,
            build_planner_envelope(
                premise=story.premise,
                previous_narrative=previous_narrative,
                choice_text=choice_text,
                state=snapshot,
            ),
            parse_planner_output,
            api_key,
        )
        plan: PagePlan = planned.parsed
        written = await self._run(
            GenerationStage.WRITER,
            build_writer_envelope(
                premise=story.premise,
                previous_narrative=previous_narrative,
                choice_text=choice_text,
                scene_intent=plan.scene_intent,
                state=snapshot,
            ),
            parse_writer_output,
            api_key,
        )
        writer = replace(written.parsed, raw_response=written.raw_response)
        return plan, writer

    def _reconcile(self, plan: PagePlan, parent: Page | None) -> StateReconciliationResult:
        emit_stage(self._stage_emitter, stage=GenerationStage.RECONCILER.value, status=STAGE_STARTED)
        previous = (
            StateReconciliationPreviousState.from_page(parent)
            if parent is not None
            else StateReconciliationPreviousState.empty()
        )
        reconciliation = reconcile_state(plan.state_intents, previous)
        emit_stage(self._stage_emitter, stage=GenerationStage.RECONCILER.value, status=STAGE_COMPLETED)
        return reconciliation

    async def _analyze(
        self,
        story: Story,
        parent: Page | None,
        writer: PageWriterResult,
        api_key: str | None,
    ) -> AnalystResult | None:
        try:
            analyzed = await self._run(
                GenerationStage.ANALYST,
                build_analyst_envelope(
                    premise=story.premise,
                    narrative=writer.narrative,
                    previous_summary=parent.narrative_summary if parent is not None else "",
                ),
                parse_analyst_output,
                api_key,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("analyst stage failed for story %s, continuing without analysis: %s", story.id, exc)
            return None
        return replace(analyzed.parsed, raw_response=analyzed.raw_response)

    async def _fold_canon(self, story: Story, reconciliation: StateReconciliationResult) -> Story:
        if not reconciliation.new_canon_facts and not reconciliation.new_character_canon_facts:
            return story
        return await self._stories.update_canon(
            story.id,
            reconciliation.new_canon_facts,
            reconciliation.new_character_canon_facts,
        )

    async def _load_story(self, story_id: str) -> Story:
        story = await self._stories.load(story_id)
        if story is None:
            raise EntityNotFoundError(f"Story not found: {story_id}")
        return story

    async def generate_next_page(
        self,
        story_id: str,
        parent_page_id: int,
        choice_index: int,
        api_key: str | None = None,
    ) -> PageOutcome:
        story = await self._load_story(story_id)
        parent = await self._pages.load(story_id, parent_page_id)
        if parent is None:
            raise EntityNotFoundError(f"Page {parent_page_id} not found in story {story_id}")
        if choice_index < 0 or choice_index >= len(parent.choices):
            raise IndexError(f"Invalid choice index {choice_index} for page {parent.id}")

        choice = parent.choices[choice_index]
        if choice.next_page_id is not None:
            existing = await self._pages.load(story_id, choice.next_page_id)
            if existing is None:
                raise EntityNotFoundError(f"Page {choice.next_page_id} referenced by choice but not found")
            return PageOutcome(page=existing, story=story, was_generated=False)

        plan, writer = await self._plan_and_write(story, parent, choice.text, api_key)
        reconciliation = self._reconcile(plan, parent)
        analyst = await self._analyze(story, parent, writer, api_key)
        result = merge_page_writer_and_reconciled_state_with_analyst_results(writer, reconciliation, analyst)

        page, created = await self._pages.commit_child(
            story_id,
            parent.id,
            choice_index,
            lambda page_id: build_page(page_id, story_id, parent, choice_index, result),
        )
        if not created:
            return PageOutcome(page=page, story=story, was_generated=False)

        story = await self._fold_canon(story, reconciliation)
        return PageOutcome(page=page, story=story, was_generated=True, result=result)

    async def create_opening_page(
        self,
        story: Story,
        writer: PageWriterResult,
        reconciliation: StateReconciliationResult,
    ) -> PageOutcome:
        await self._stories.save_if_missing(story)
        result = merge_page_writer_and_reconciled_state_with_analyst_results(writer, reconciliation, None)
        page, created = await self._pages.commit_opening(
            story.id,
            lambda page_id: build_page(page_id, story.id, None, None, result),
        )
        if not created:
            return PageOutcome(page=page, story=story, was_generated=False)
        story = await self._fold_canon(story, reconciliation)
        return PageOutcome(page=page, story=story, was_generated=True, result=result)

    async def generate_opening_page(self, story: Story, api_key: str | None = None) -> PageOutcome:
        if await self._pages.exists(story.id, 1):
            existing = await self._pages.load(story.id, 1)
            return PageOutcome(page=existing, story=story, was_generated=False)
        plan, writer = await self._plan_and_write(story, None, "", api_key)
        reconciliation = self._reconcile(plan, None)
        return await self.create_opening_page(story, writer, reconciliation)


__all__ = [
    "PageOutcome",
    "PageService",
    "build_page",
    "page_state_snapshot",
]
