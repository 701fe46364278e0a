"""
Prompt templates for picture-book generation.

Covers story script writing, splitting a script into storyboard scenes, and
the per-page illustration prompt (style, characters, scene context).
"""

from typing import Any

DEFAULT_STYLE = "pixar"

STYLE_PROMPTS: dict[str, str] = {
    "pixar": (
        "3D animated style in the spirit of Pixar films: soft global lighting, "
        "rounded friendly character designs, rich saturated colors, expressive faces"
    ),
    "anime": (
        "Japanese anime style: clean line art, cel shading, bright palette, "
        "large expressive eyes, detailed painted backgrounds"
    ),
    "watercolor": (
        "Gentle watercolor children's book illustration: soft edges, paper texture, "
        "light pastel washes"
    ),
}

# Script generation
SCRIPT_GENERATION_PROMPT = """You are an award-winning children's picture-book author and a patient primary-school teacher.

Write a short, warm picture-book story that teaches the ideas behind the following questions. Every question must be explained naturally through the plot, never as a lecture.

Questions:
{topics}

{plot_direction}
Requirements:
1. The story is for children aged 5 to 10; use short sentences and vivid, concrete language.
2. Give the main character a clear goal and let them solve each question along the way.
3. Include light dialogue between characters.
4. End with a gentle summary of what was learned.

Return only the story text."""

# Storyboard splitting
STORYBOARD_FORMAT = """Use exactly this format for every scene, with no other text:

[Scene 1]
Scene description: <what the illustration shows: setting, characters, actions, expressions>
Story text: <the text printed on this page>

[Scene 2]
Scene description: ...
Story text: ..."""

SPLIT_SCRIPT_STRICT_PROMPT = """Split the following picture-book script into exactly {storyboard_count} storyboard scenes.

Keep the original wording of the story text unchanged: do not rewrite, shorten or add sentences. Only decide where each page begins and ends, and describe the illustration for each page.

Script:
```
{script}
```

{storyboard_format}"""

SPLIT_SCRIPT_POLISH_PROMPT = """Split the following picture-book script into exactly {storyboard_count} storyboard scenes.

You may polish the story text so each page reads smoothly aloud, keeping the plot, characters and teaching points intact. Describe a vivid illustration for each page.

Script:
```
{script}
```

{storyboard_format}"""

# Page illustration
PAGE_PROMPT = """{scene_context}
Create one complete children's picture-book page.

Art style: {style}
{character_prompt}
Illustration: {scene_description}
{story_text_block}
Present character dialogue in comic-style speech bubbles pointing at the speaker. Narration may appear in a caption box at the edge of the page. Keep characters, palette and lighting consistent with the rest of the book."""


def get_style_prompt(style: str | None) -> str:
    """Return the art-style description for a style key, or the key itself when unknown."""
    key = (style or DEFAULT_STYLE).strip().lower()
    return STYLE_PROMPTS.get(key, style or STYLE_PROMPTS[DEFAULT_STYLE])


def build_script_generation_prompt(topics: list[str], plot_direction: str = "") -> str:
    numbered = "\n".join(f"{i}. {topic.strip()}" for i, topic in enumerate(topics, 1))
    direction = f"Plot direction: {plot_direction.strip()}\n" if plot_direction else ""
    return SCRIPT_GENERATION_PROMPT.format(topics=numbered, plot_direction=direction)


def build_split_script_prompt(
    script: str, storyboard_count: int = 8, keep_original: bool = False
) -> str:
    """
    Build the storyboard-splitting prompt.

    Args:
        script: Full story script
        storyboard_count: Number of scenes to produce
        keep_original: Keep the story text verbatim (strict) instead of polishing it
    """
    template = SPLIT_SCRIPT_STRICT_PROMPT if keep_original else SPLIT_SCRIPT_POLISH_PROMPT
    return template.format(
        script=script.strip(),
        storyboard_count=storyboard_count,
        storyboard_format=STORYBOARD_FORMAT,
    )


def build_character_prompt(characters: list[dict[str, Any]] | None) -> str:
    """Describe recurring characters so every page draws them the same way."""
    lines = []
    for character in characters or []:
        name = (character.get("name") or "").strip()
        description = (character.get("description") or "").strip()
        if not name and not description:
            continue
        if name and description:
            lines.append(f"- {name}: {description}")
        else:
            lines.append(f"- {name or description}")
    if not lines:
        return ""
    return "Characters (keep their appearance identical on every page):\n" + "\n".join(lines)


def build_scene_context(scene_index: int, total_scenes: int, story_title: str = "") -> str:
    context = f"[Scene {scene_index} of {total_scenes}] "
    if story_title:
        context += f'Story: "{story_title}". '

    if scene_index == 1:
        context += "Opening scene - establish the setting and introduce the main character."
    elif scene_index == total_scenes:
        context += "Final scene - conclusion of the story."
    else:
        context += "Continuation scene - maintain visual continuity with previous scenes."
    return context


def build_page_prompt(
    scene_description: str,
    story_text: str = "",
    style: str | None = DEFAULT_STYLE,
    scene_index: int = 1,
    total_scenes: int = 1,
    story_title: str = "",
    character_prompt: str = "",
) -> str:
    """
    Build the full illustration prompt for one picture-book page.

    Returns:
        Prompt string ready for an image model
    """
    story_text_block = f'Page text: "{story_text.strip()}"\n' if story_text.strip() else ""
    return PAGE_PROMPT.format(
        scene_context=build_scene_context(scene_index, total_scenes, story_title),
        style=get_style_prompt(style),
        character_prompt=f"{character_prompt}\n" if character_prompt else "",
        scene_description=scene_description.strip(),
        story_text_block=story_text_block,
    ).strip()
