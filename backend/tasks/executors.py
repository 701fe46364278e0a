"""
Task executors for the picture-book pipeline.

Each executor is a coroutine `executor(task, context)` that reads its input
from `task.payload`, reports progress through `context.update_progress`,
talks to upstream APIs only through `context.client`, and returns a JSON-able
result. Raised exceptions become the task's error.
"""

import re
from typing import Any

import structlog

from backend.core.errors import (
    ImageGenerationError,
    PayloadValidationError,
    TaskCancelledError,
    UnsupportedVendorError,
)
from backend.prompts.storybook import (
    build_character_prompt,
    build_page_prompt,
    build_script_generation_prompt,
    build_split_script_prompt,
)
from backend.prompts.textbook import (
    TEXTBOOK_ANALYZE_SYSTEM_PROMPT,
    TEXTBOOK_FINAL_SYSTEM_PROMPT,
    TEXTBOOK_SYSTEM_PROMPT,
    build_textbook_analyze_prompt,
    build_textbook_final_prompt,
    build_textbook_user_prompt,
)
from backend.tasks.engine import ExecutionContext
from backend.tasks.models import TaskEntry
from backend.upstream.image_reducer import compress_data_uri_async, data_uri_size
from backend.upstream.response_normalizer import extract_image, extract_text
from backend.upstream.vendor import (
    IMAGE_VENDORS,
    VendorConfig,
    build_image_request,
    build_text_request,
)

logger = structlog.get_logger(__name__)

DEFAULT_STORYBOARD_COUNT = 8
SCRIPT_TEMPERATURE = 0.8
SPLIT_TEMPERATURE = 0.7

STORYBOARD_PATTERN = re.compile(
    r"(?:\[Scene\s*|##\s*Scene\s*)(\d+)\]?"
    r".*?(?:\*\*|\s)*Scene description(?:\*\*|\s)*[:：](.*?)"
    r"(?:\*\*|\s)*Story text(?:\*\*|\s)*[:：](.*?)"
    r"(?=\[Scene\s*\d|##\s*Scene\s*\d|\Z)",
    re.DOTALL | re.IGNORECASE,
)


def parse_storyboards(content: str) -> list[dict[str, Any]]:
    """
    Parse `[Scene N]` blocks into storyboard dicts.

    Accepts `[Scene N]` and `## Scene N` headers and markdown-bold field
    names. Returns an empty list when nothing matches.
    """
    storyboards = []
    for match in STORYBOARD_PATTERN.finditer(content or ""):
        storyboards.append(
            {
                "id": int(match.group(1)),
                "sceneDescription": match.group(2).replace("**", "").strip(),
                "storyText": match.group(3).replace("**", "").strip(),
            }
        )
    return storyboards


async def _complete_text(
    context: ExecutionContext,
    config: VendorConfig,
    messages: list[dict[str, Any]] | str,
    *,
    temperature: float = SCRIPT_TEMPERATURE,
    timeout_ms: int | None = None,
) -> str:
    request = build_text_request(config, messages, temperature=temperature)
    response = await context.client.post_json(
        request.url,
        request.body,
        request.headers,
        timeout_ms=timeout_ms,
        cancel_token=context.cancel_token,
    )
    return extract_text(response.data)


def _image_content(text: str, images: list[str]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = [{"type": "text", "text": text}]
    content.extend({"type": "image_url", "image_url": {"url": image}} for image in images)
    return content


def _batch_images(images: list[str], batch_size: int, max_bytes: int) -> list[list[str]]:
    """Group images into batches bounded by count and by total request size."""
    batches: list[list[str]] = []
    current: list[str] = []
    current_size = 0
    for index, image in enumerate(images, 1):
        size = len(image)
        if size > max_bytes:
            raise PayloadValidationError(
                f"Textbook image {index} is {size / 1024 / 1024:.2f} MB, "
                f"larger than the {max_bytes / 1024 / 1024:.0f} MB request limit"
            )
        if current and (len(current) >= batch_size or current_size + size > max_bytes):
            batches.append(current)
            current, current_size = [], 0
        current.append(image)
        current_size += size
    if current:
        batches.append(current)
    return batches


async def _script_from_textbook(
    context: ExecutionContext,
    config: VendorConfig,
    images: list[str],
    plot_direction: str,
) -> str:
    settings = context.settings
    if len(images) > settings.textbook_max_images:
        raise PayloadValidationError(
            f"Too many textbook images ({len(images)}); "
            f"at most {settings.textbook_max_images} are supported"
        )

    total_size = sum(len(image) for image in images)
    timeout_ms = settings.text_request_timeout_ms

    if (
        len(images) <= settings.textbook_batch_size
        and total_size <= settings.textbook_max_request_bytes
    ):
        await context.update_progress(30, f"Analyzing {len(images)} textbook page(s)")
        messages = [
            {"role": "system", "content": TEXTBOOK_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": _image_content(
                    build_textbook_user_prompt(len(images), plot_direction), images
                ),
            },
        ]
        return await _complete_text(context, config, messages, timeout_ms=timeout_ms)

    batches = _batch_images(
        images, settings.textbook_batch_size, settings.textbook_max_request_bytes
    )
    logger.info(
        "Analyzing textbook in batches",
        task_id=context.task_id,
        images=len(images),
        batches=len(batches),
    )

    analyses = []
    for number, batch in enumerate(batches, 1):
        await context.update_progress(
            20 + int(60 * (number - 1) / len(batches)),
            f"Analyzing batch {number} of {len(batches)}",
        )
        messages = [
            {"role": "system", "content": TEXTBOOK_ANALYZE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": _image_content(
                    build_textbook_analyze_prompt(len(batch), number, len(batches)), batch
                ),
            },
        ]
        analyses.append(
            await _complete_text(context, config, messages, timeout_ms=timeout_ms)
        )

    await context.update_progress(80, "Writing script from textbook analysis")
    messages = [
        {"role": "system", "content": TEXTBOOK_FINAL_SYSTEM_PROMPT},
        {"role": "user", "content": build_textbook_final_prompt(analyses, plot_direction)},
    ]
    return await _complete_text(context, config, messages, timeout_ms=timeout_ms)


async def generate_script(task: TaskEntry, context: ExecutionContext) -> dict[str, Any]:
    """
    Write a picture-book script from topics or from textbook page images.

    Payload:
        textApiConfig: Text API configuration
        topics: Questions the story should teach (either this or images)
        images: Textbook pages as data URIs
        plotDirection: Optional steer for the plot
    """
    payload = task.payload
    config = VendorConfig.from_payload(payload.get("textApiConfig"), "textApiConfig")
    plot_direction = payload.get("plotDirection") or ""
    images = [image for image in payload.get("images") or [] if image]
    topics = [topic for topic in payload.get("topics") or [] if str(topic).strip()]

    await context.update_progress(10, "Preparing script generation")

    if images:
        script = await _script_from_textbook(context, config, images, plot_direction)
    elif topics:
        await context.update_progress(30, f"Writing script for {len(topics)} topic(s)")
        prompt = build_script_generation_prompt([str(t) for t in topics], plot_direction)
        script = await _complete_text(context, config, prompt, temperature=SCRIPT_TEMPERATURE)
    else:
        raise PayloadValidationError("Provide at least one topic or textbook image")

    await context.update_progress(95, "Script generated")
    return {"script": script}


async def split_script(task: TaskEntry, context: ExecutionContext) -> dict[str, Any]:
    """
    Split a script into storyboard scenes.

    Payload:
        script: Story script
        textApiConfig: Text API configuration
        storyboardCount: Number of scenes (default 8)
        keepOriginal: Keep the story text verbatim instead of polishing it
    """
    payload = task.payload
    script = payload.get("script")
    if not isinstance(script, str) or not script.strip():
        raise PayloadValidationError("Script content is empty")

    try:
        storyboard_count = int(payload.get("storyboardCount") or DEFAULT_STORYBOARD_COUNT)
    except (TypeError, ValueError) as e:
        raise PayloadValidationError("storyboardCount must be an integer") from e
    if storyboard_count < 1:
        raise PayloadValidationError("storyboardCount must be at least 1")

    config = VendorConfig.from_payload(payload.get("textApiConfig"), "textApiConfig")
    keep_original = bool(payload.get("keepOriginal", False))

    await context.update_progress(10, "Preparing storyboard split")
    prompt = build_split_script_prompt(script, storyboard_count, keep_original)

    await context.update_progress(30, f"Splitting script into {storyboard_count} scenes")
    content = await _complete_text(context, config, prompt, temperature=SPLIT_TEMPERATURE)

    await context.update_progress(80, "Parsing storyboards")
    storyboards = parse_storyboards(content)
    if not storyboards:
        logger.warning(
            "No storyboard scenes parsed",
            task_id=task.task_id,
            content_preview=content[:200],
        )

    return {"rawContent": content, "storyboards": storyboards}


async def _collect_reference_images(
    context: ExecutionContext,
    characters: list[dict[str, Any]],
    previous_image_url: str,
    scene_index: int,
) -> list[str]:
    """
    Character references first, then the previous page, within the size budget.

    Oversized references are compressed before they count against the budget.
    """
    settings = context.settings
    references: list[str] = []
    total = 0

    for character in characters:
        for image in character.get("referenceImages") or []:
            if not image:
                continue
            if data_uri_size(image) > settings.image_compress_threshold_bytes:
                image = await compress_data_uri_async(image, settings.image_target_bytes)
            size = data_uri_size(image)
            if total + size <= settings.max_reference_bytes:
                references.append(image)
                total += size
            else:
                logger.info(
                    "Skipping reference image over size budget",
                    task_id=context.task_id,
                    character=character.get("name"),
                )

    if previous_image_url and scene_index > 1:
        if total + data_uri_size(previous_image_url) <= settings.max_reference_bytes:
            references.append(previous_image_url)
        else:
            logger.info("Skipping previous page reference over size budget", task_id=context.task_id)

    return references


async def _render_scene(
    context: ExecutionContext,
    config: VendorConfig,
    scene: dict[str, Any],
    common: dict[str, Any],
    *,
    scene_index: int,
    total_scenes: int,
    previous_image_url: str = "",
) -> dict[str, Any]:
    scene_description = scene.get("sceneDescription")
    if not isinstance(scene_description, str) or not scene_description.strip():
        raise PayloadValidationError("Scene description is empty")

    characters = [c for c in common.get("characters") or [] if isinstance(c, dict)]

    if scene.get("isCharacterGeneration") or common.get("isCharacterGeneration"):
        prompt = scene_description
    else:
        prompt = build_page_prompt(
            scene_description,
            story_text=scene.get("storyText") or "",
            style=common.get("style"),
            scene_index=scene_index,
            total_scenes=total_scenes,
            story_title=common.get("storyTitle") or "",
            character_prompt=build_character_prompt(characters),
        )

    references: list[str] = []
    if config.type == "openai" and config.is_gemini:
        references = await _collect_reference_images(
            context, characters, previous_image_url, scene_index
        )

    request = build_image_request(
        config,
        prompt,
        reference_images=references,
        image_size=common.get("imageSize") or "1024x1024",
        aspect_ratio=common.get("imageAspectRatio") or "1:1",
    )
    logger.info(
        "Requesting scene image",
        task_id=context.task_id,
        scene_index=scene_index,
        endpoint=request.endpoint,
        references=len(references),
    )
    response = await context.client.post_json(
        request.url,
        request.body,
        request.headers,
        cancel_token=context.cancel_token,
    )
    return {"imageUrl": extract_image(response.data), "prompt": prompt}


def _image_config(payload: dict[str, Any]) -> VendorConfig:
    config = VendorConfig.from_payload(payload.get("imageApiConfig"), "imageApiConfig")
    if config.type not in IMAGE_VENDORS:
        raise UnsupportedVendorError(f"Unsupported image API type: {config.type}")
    return config


async def generate_single_image(task: TaskEntry, context: ExecutionContext) -> dict[str, Any]:
    """
    Generate one picture-book page (or a character sheet).

    Payload:
        sceneDescription: What the illustration shows
        imageApiConfig: Image API configuration
        storyText, characters, style, sceneIndex, totalScenes, storyTitle,
        previousImageUrl, imageSize, imageAspectRatio, isCharacterGeneration
    """
    payload = task.payload
    config = _image_config(payload)
    scene_index = int(payload.get("sceneIndex") or 1)
    total_scenes = int(payload.get("totalScenes") or 1)

    await context.update_progress(10, "Preparing image prompt")
    await context.update_progress(30, f"Generating image for scene {scene_index}")
    result = await _render_scene(
        context,
        config,
        payload,
        payload,
        scene_index=scene_index,
        total_scenes=total_scenes,
        previous_image_url=payload.get("previousImageUrl") or "",
    )
    await context.update_progress(95, "Image generated")
    return result


async def generate_images(task: TaskEntry, context: ExecutionContext) -> dict[str, Any]:
    """
    Generate an image for every scene, in order.

    Each generated page is fed forward as a reference for the next one. A
    failed scene is recorded and skipped; the task fails only when every
    scene fails.

    Payload:
        scenes: List of {sceneDescription, storyText, id?}
        imageApiConfig: Image API configuration
        characters, style, storyTitle, imageSize, imageAspectRatio
    """
    payload = task.payload
    scenes = payload.get("scenes")
    if not isinstance(scenes, list) or not scenes:
        raise PayloadValidationError("Provide at least one scene")
    if not all(isinstance(scene, dict) for scene in scenes):
        raise PayloadValidationError("Each scene must be an object")
    config = _image_config(payload)

    total = len(scenes)
    images: list[dict[str, Any]] = []
    failed = 0
    last_error = ""
    previous_image_url = payload.get("previousImageUrl") or ""

    for index, scene in enumerate(scenes, 1):
        await context.update_progress(
            5 + int(90 * (index - 1) / total), f"Generating image {index} of {total}"
        )
        entry: dict[str, Any] = {"sceneIndex": index, "id": scene.get("id", index)}
        try:
            rendered = await _render_scene(
                context,
                config,
                scene,
                payload,
                scene_index=index,
                total_scenes=total,
                previous_image_url=previous_image_url,
            )
        except TaskCancelledError:
            raise
        except Exception as e:
            failed += 1
            last_error = str(e)
            logger.warning(
                "Scene image failed",
                task_id=task.task_id,
                scene_index=index,
                error=last_error,
                error_type=type(e).__name__,
            )
            entry.update({"imageUrl": None, "prompt": None, "error": last_error})
        else:
            previous_image_url = rendered["imageUrl"]
            entry.update(rendered, error=None)
        images.append(entry)

    if failed == total:
        raise ImageGenerationError(f"All {total} scene images failed: {last_error}")

    await context.update_progress(95, f"Generated {total - failed} of {total} images")
    return {"images": images, "failed": failed}
