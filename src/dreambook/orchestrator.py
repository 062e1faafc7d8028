"""Sequence orchestration: one job from validation to the terminal progress event."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from dreambook.character_analysis import CharacterAnalyzer
from dreambook.context import PipelineContext
from dreambook.error_handling import (
    FatalOrchestrationFailure,
    SceneGenerationFailure,
    SequenceValidationError,
    ValidationDetail,
    error_monitoring_context,
    user_message,
)
from dreambook.models import (
    CharacterDescription,
    CharacterPreview,
    GenerationRequest,
    GlobalRules,
    ImageRef,
    JobState,
    ProgressEvent,
    ProgressKind,
    SceneResult,
    SceneStatus,
    SequenceResult,
    StyleRecord,
)
from dreambook.progress import ProgressChannel
from dreambook.prompt_engineering import (
    build_character_fragment,
    compose_character_prompt,
    compose_prompt,
)
from dreambook.rules import GlobalRulesProvider
from dreambook.sanitizer import sanitize_scene_text, sanitize_scenes
from dreambook.services.sequence_store import SequenceStore
from dreambook.styles import StyleResolver
from dreambook.synthesis import ImageSynthesisClient
from dreambook.utils import sniff_image_type


logger = logging.getLogger(__name__)

# Progress milestones (percent)
VALIDATED_PERCENT = 5
ANALYSIS_PERCENT = 10
CHARACTER_START_PERCENT = 12
SCENES_START_PERCENT = 25
SCENES_END_PERCENT = 95
FINALIZING_PERCENT = 97


@dataclass
class PreparedRequest:
    """A request that passed validation, with its scenes normalised."""
    request: GenerationRequest
    style: StyleRecord
    scene_texts: List[str]
    used_default_scene: bool = False
    dropped_scene_count: int = 0
    warnings: List[str] = field(default_factory=list)


RulesSource = Union[GlobalRules, GlobalRulesProvider, None]


class SequenceOrchestrator:
    """Drives a dream sequence job through its states.

    Validating -> AnalyzingCharacter -> GeneratingCharacterImage ->
    GeneratingScenes -> Finalizing -> Completed | Failed
    """

    def __init__(
        self,
        context: PipelineContext,
        style_resolver: StyleResolver,
        analyzer: CharacterAnalyzer,
        synthesis: ImageSynthesisClient,
        store: SequenceStore,
        rules: RulesSource = None,
    ):
        self.context = context
        self.style_resolver = style_resolver
        self.analyzer = analyzer
        self.synthesis = synthesis
        self.store = store
        self.rules = rules

    def rules_snapshot(self) -> GlobalRules | None:
        """Rule set for one job, taken once at job start."""
        if isinstance(self.rules, GlobalRulesProvider):
            return self.rules.current()
        return self.rules

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_reference(self, request: GenerationRequest, details: List[ValidationDetail]) -> None:
        image = request.reference_image
        if not image:
            details.append(ValidationDetail("reference_image", "A reference photo is required."))
            return

        if len(image) > self.context.max_reference_bytes:
            limit_mb = self.context.max_reference_bytes / (1024 * 1024)
            details.append(
                ValidationDetail("reference_image", f"The reference photo must be at most {limit_mb:.0f}MB.")
            )
            return

        allowed = set(self.context.allowed_image_types)
        declared = (request.reference_content_type or "").split(";")[0].strip().lower()
        if declared and declared not in allowed:
            details.append(
                ValidationDetail("reference_image", f"Unsupported image type {declared}.")
            )
            return

        detected = sniff_image_type(image)
        if detected is None or detected not in allowed:
            details.append(
                ValidationDetail("reference_image", "The reference photo is not a supported image.")
            )

    def prepare_scenes(self, texts: List[str]) -> tuple[List[str], bool, int]:
        """Sanitize, drop empties, cap the count and apply the default scene.

        Returns the scene texts, whether the default was used and how many
        scenes were dropped by the cap.
        """
        usable = sanitize_scenes(texts)

        dropped = 0
        if len(usable) > self.context.max_scenes:
            dropped = len(usable) - self.context.max_scenes
            logger.warning(
                "Request has %d scenes; only the first %d are used",
                len(usable),
                self.context.max_scenes,
            )
            usable = usable[: self.context.max_scenes]

        if not usable:
            logger.info("No usable scene text supplied; using the default scene")
            return [self.context.default_scene_text], True, dropped

        return usable, False, dropped

    def validate(self, request: GenerationRequest) -> PreparedRequest:
        """Pre-flight checks; raises SequenceValidationError without side effects."""
        details: List[ValidationDetail] = []

        if not request.subject_label.strip():
            details.append(ValidationDetail("subject_label", "A subject name is required."))

        style: StyleRecord | None = None
        if not request.style_key.strip():
            details.append(ValidationDetail("style_key", "A style must be selected."))
        else:
            style = self.style_resolver.resolve(request.style_key)
            if style is None:
                details.append(ValidationDetail("style_key", "The selected style is not valid."))

        self._validate_reference(request, details)

        limit = self.context.max_scene_length
        for index, scene in enumerate(request.scenes):
            if len(scene.text.strip()) > limit:
                details.append(
                    ValidationDetail(f"scenes[{index}]", f"A scene description must be at most {limit} characters.")
                )

        if details:
            raise SequenceValidationError(details)

        scene_texts, used_default, dropped = self.prepare_scenes([scene.text for scene in request.scenes])
        warnings = []
        if dropped:
            warnings.append(
                f"Only the first {self.context.max_scenes} scenes are used; {dropped} were left out."
            )

        return PreparedRequest(
            request=request,
            style=style,
            scene_texts=scene_texts,
            used_default_scene=used_default,
            dropped_scene_count=dropped,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Running a job
    # ------------------------------------------------------------------

    @staticmethod
    async def _emit(
        channel: ProgressChannel,
        message: str,
        percent: float,
        state: JobState,
        *,
        kind: ProgressKind = ProgressKind.INFO,
        terminal: bool = False,
        sequence_number: int | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        await channel.push(
            ProgressEvent(
                message=message,
                percent=max(0, min(100, int(round(percent)))),
                kind=kind,
                terminal=terminal,
                state=state,
                sequence_number=sequence_number,
                payload=payload,
            )
        )

    def character_fragment(self, request: GenerationRequest, style: StyleRecord) -> str:
        if request.character_prompt and request.character_prompt.strip():
            return request.character_prompt.strip()
        return build_character_fragment(style, request.subject_label)

    @staticmethod
    def scene_percent(index: int, total: int) -> float:
        """Linear share of the scene stage after ``index`` of ``total`` scenes."""
        span = SCENES_END_PERCENT - SCENES_START_PERCENT
        return SCENES_START_PERCENT + span * index / max(total, 1)

    async def _generate_scene(
        self,
        number: int,
        text: str,
        prepared: PreparedRequest,
        description: CharacterDescription,
        fragment: str,
        rules: GlobalRules | None,
        reference: bytes | None,
    ) -> SceneResult:
        """Generate one scene; any failure becomes a placeholder result."""
        prompt = ""
        try:
            prompt = compose_prompt(
                prepared.style,
                description,
                fragment,
                sanitize_scene_text(text),
                rules,
                max_length=self.context.max_prompt_length,
            )
            synthesis = await self.synthesis.synthesize(prompt, reference, prefix=f"scene-{number}")
            if synthesis.is_placeholder:
                raise SceneGenerationFailure(number)
            return SceneResult(
                sequence_number=number,
                prompt=prompt,
                image=synthesis.image,
                status=SceneStatus.SUCCEEDED,
            )
        except Exception as e:
            logger.warning("Scene %d failed: %s", number, e)
            failure = e if isinstance(e, SceneGenerationFailure) else SceneGenerationFailure(number, str(e))
            return SceneResult(
                sequence_number=number,
                prompt=prompt,
                image=ImageRef.placeholder(self.context.error_placeholder_url),
                status=SceneStatus.FAILED_PLACEHOLDER,
                error=user_message(failure),
            )

    async def _persist(self, result: SequenceResult) -> str:
        loop = asyncio.get_running_loop()
        save = loop.run_in_executor(None, self.store.save_sequence, result)
        try:
            # Shielded so a timed-out write can still be observed and removed
            return await asyncio.wait_for(asyncio.shield(save), timeout=self.context.persistence_timeout)
        except asyncio.TimeoutError as e:
            save.add_done_callback(self._discard_late_save)
            raise FatalOrchestrationFailure(
                f"Saving the dream sequence timed out after {self.context.persistence_timeout:.1f}s"
            ) from e
        except Exception as e:
            raise FatalOrchestrationFailure(f"Could not save the dream sequence: {e}") from e

    def _discard_late_save(self, save: asyncio.Future) -> None:
        """Remove a sequence whose write finished after its job had failed."""
        if save.cancelled() or save.exception() is not None:
            return
        sequence_id = save.result()
        logger.warning("Sequence %s was saved after its job failed; removing it", sequence_id)
        asyncio.get_running_loop().run_in_executor(None, self._delete_quietly, sequence_id)

    def _delete_quietly(self, sequence_id: str) -> None:
        try:
            self.store.delete(sequence_id)
        except Exception as e:
            logger.error("Could not remove orphaned sequence %s: %s", sequence_id, e)

    async def run(
        self,
        request: Union[GenerationRequest, PreparedRequest],
        channel: ProgressChannel,
        cancel_event: asyncio.Event | None = None,
    ) -> SequenceResult | None:
        """Run one job to completion, reporting every step on ``channel``.

        Returns the persisted SequenceResult, or None when the job failed.
        The channel always receives exactly one terminal event and is closed.
        """
        channel.open()
        try:
            if isinstance(request, PreparedRequest):
                prepared = request
            else:
                try:
                    prepared = self.validate(request)
                except SequenceValidationError as e:
                    logger.info("Sequence request rejected: %s", e)
                    await self._emit(
                        channel,
                        user_message(e),
                        0,
                        JobState.FAILED,
                        kind=ProgressKind.ERROR,
                        terminal=True,
                        payload=e.as_dict(),
                    )
                    return None

            try:
                return await self._run_prepared(prepared, channel, cancel_event)
            except Exception as e:
                logger.error("Dream sequence job failed: %s", e, exc_info=True)
                failure = e if isinstance(e, FatalOrchestrationFailure) else FatalOrchestrationFailure(str(e))
                await self._emit(
                    channel,
                    user_message(failure),
                    channel.last_event.percent if channel.last_event else 0,
                    JobState.FAILED,
                    kind=ProgressKind.ERROR,
                    terminal=True,
                    payload={"error": user_message(failure), "code": failure.code},
                )
                return None
        finally:
            await channel.close()

    async def _run_prepared(
        self,
        prepared: PreparedRequest,
        channel: ProgressChannel,
        cancel_event: asyncio.Event | None,
    ) -> SequenceResult:
        request = prepared.request
        rules = self.rules_snapshot()
        total = len(prepared.scene_texts)

        await self._emit(
            channel,
            f"Request accepted: {total} scene(s) in {prepared.style.display_name} style",
            VALIDATED_PERCENT,
            JobState.VALIDATING,
        )
        for warning in prepared.warnings:
            await self._emit(channel, warning, VALIDATED_PERCENT, JobState.VALIDATING, kind=ProgressKind.WARNING)

        async with error_monitoring_context("character_analysis"):
            description = await self.analyzer.analyze(request.reference_image, request.reference_content_type)
        if description.is_empty:
            message = "Character analysis unavailable; continuing without it"
        else:
            message = "Reference photo analysed"
        await self._emit(channel, message, ANALYSIS_PERCENT, JobState.ANALYZING_CHARACTER)

        fragment = self.character_fragment(request, prepared.style)

        await self._emit(
            channel, "Generating character image", CHARACTER_START_PERCENT, JobState.GENERATING_CHARACTER_IMAGE
        )
        async with error_monitoring_context("character_image"):
            character_prompt = compose_character_prompt(
                prepared.style,
                description,
                fragment,
                rules,
                max_length=self.context.max_prompt_length,
            )
            character = await self.synthesis.synthesize(
                character_prompt, request.reference_image, prefix="character"
            )
        if character.is_placeholder:
            await self._emit(
                channel,
                "The character image could not be generated; continuing with the scenes",
                SCENES_START_PERCENT,
                JobState.GENERATING_CHARACTER_IMAGE,
                kind=ProgressKind.WARNING,
            )
        else:
            await self._emit(
                channel, "Character image ready", SCENES_START_PERCENT, JobState.GENERATING_CHARACTER_IMAGE
            )

        # Scenes are conditioned on the generated character when there is one
        scene_reference = character.data or request.reference_image

        scenes: List[SceneResult] = []
        async with error_monitoring_context("scene_generation"):
            for index, text in enumerate(prepared.scene_texts):
                number = index + 1
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Job cancelled before scene %d; keeping %d scene(s)", number, len(scenes))
                    await self._emit(
                        channel,
                        f"Cancelled; keeping {len(scenes)} completed scene(s)",
                        self.scene_percent(index, total),
                        JobState.GENERATING_SCENES,
                        kind=ProgressKind.WARNING,
                    )
                    break

                await self._emit(
                    channel,
                    f"Generating scene {number} of {total}",
                    self.scene_percent(index, total),
                    JobState.GENERATING_SCENES,
                    sequence_number=number,
                )
                scene = await self._generate_scene(
                    number, text, prepared, description, fragment, rules, scene_reference
                )
                scenes.append(scene)

                if scene.status == SceneStatus.SUCCEEDED:
                    await self._emit(
                        channel,
                        f"Scene {number} of {total} ready",
                        self.scene_percent(number, total),
                        JobState.GENERATING_SCENES,
                        sequence_number=number,
                    )
                else:
                    await self._emit(
                        channel,
                        f"Scene {number} could not be generated; an error image was used",
                        self.scene_percent(number, total),
                        JobState.GENERATING_SCENES,
                        kind=ProgressKind.WARNING,
                        sequence_number=number,
                    )

        await self._emit(channel, "Saving dream sequence", FINALIZING_PERCENT, JobState.FINALIZING)
        result = SequenceResult(
            subject_label=request.subject_label.strip(),
            dreamer=request.dreamer,
            style_key=prepared.style.key,
            character_image=character.image,
            character_prompt=fragment,
            character_description=description.text,
            scenes=scenes,
        )
        async with error_monitoring_context("finalize"):
            sequence_id = await self._persist(result)
        result = result.model_copy(update={"id": sequence_id})

        failed = result.failed_scene_count
        if failed:
            message = f"Dream sequence complete ({failed} of {len(scenes)} scene(s) failed)"
        else:
            message = "Dream sequence complete"
        await self._emit(
            channel,
            message,
            100,
            JobState.COMPLETED,
            terminal=True,
            payload=result.model_dump(mode="json"),
        )
        logger.info("Sequence %s completed with %d scene(s), %d failed", sequence_id, len(scenes), failed)
        return result

    # ------------------------------------------------------------------
    # Character preview
    # ------------------------------------------------------------------

    async def generate_character(self, request: GenerationRequest) -> CharacterPreview:
        """Generate only the character image and its reusable prompt fragment."""
        prepared = self.validate(request)
        rules = self.rules_snapshot()

        async with error_monitoring_context("character_preview"):
            description = await self.analyzer.analyze(request.reference_image, request.reference_content_type)
            fragment = self.character_fragment(request, prepared.style)
            prompt = compose_character_prompt(
                prepared.style,
                description,
                fragment,
                rules,
                max_length=self.context.max_prompt_length,
            )
            character = await self.synthesis.synthesize(prompt, request.reference_image, prefix="character")

        return CharacterPreview(
            character_image=character.image,
            character_prompt=fragment,
            character_description=description.text,
        )
