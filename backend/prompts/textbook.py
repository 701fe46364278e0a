"""
Prompt templates for turning textbook page photos into a picture-book script.

Small uploads are sent in one request (system + user prompt with all images).
Larger uploads are analyzed batch by batch and a final request writes the
script from the collected analyses.
"""

TEXTBOOK_SYSTEM_PROMPT = """You are an experienced primary-school teacher and picture-book author who turns textbook lessons into stories children love.

Read the textbook pages carefully, identify the knowledge points they teach, and write a picture-book story that teaches those points through plot and dialogue."""

TEXTBOOK_USER_PROMPT = """Here are {image_count} photo(s) of textbook pages.

1. Identify every knowledge point, example and exercise on the pages.
2. Write a picture-book story for children that teaches all of them in order.
3. Keep explanations accurate; use concrete situations children recognize.
{plot_direction}
Return only the story text."""

TEXTBOOK_ANALYZE_SYSTEM_PROMPT = """You are an experienced primary-school teacher. You extract the teaching content of textbook pages precisely and completely, without inventing anything."""

TEXTBOOK_ANALYZE_PROMPT = """This is batch {batch_number} of {total_batches}: {image_count} photo(s) of textbook pages.

List, in page order:
- the knowledge points taught
- worked examples with their solutions
- exercises and questions

Be concise but complete. Do not write a story yet."""

TEXTBOOK_FINAL_SYSTEM_PROMPT = "You are an experienced primary-school teacher and picture-book author who makes learning fun."

TEXTBOOK_FINAL_PROMPT = """Below are the analyses of a textbook lesson, batch by batch.

{analyses}

Write one coherent picture-book story for children that teaches every knowledge point above in order, through plot and dialogue.
{plot_direction}
Return only the story text."""


def _plot_direction_line(plot_direction: str) -> str:
    return f"Plot direction: {plot_direction.strip()}\n" if plot_direction and plot_direction.strip() else ""


def build_textbook_user_prompt(image_count: int, plot_direction: str = "") -> str:
    return TEXTBOOK_USER_PROMPT.format(
        image_count=image_count, plot_direction=_plot_direction_line(plot_direction)
    )


def build_textbook_analyze_prompt(image_count: int, batch_number: int, total_batches: int) -> str:
    return TEXTBOOK_ANALYZE_PROMPT.format(
        image_count=image_count, batch_number=batch_number, total_batches=total_batches
    )


def build_textbook_final_prompt(analyses: list[str], plot_direction: str = "") -> str:
    """
    Build the prompt that writes the script from per-batch analyses.

    Args:
        analyses: Analysis text of each batch, in batch order
        plot_direction: Optional steer for the story
    """
    sections = "\n\n".join(
        f"### Batch {i}\n{analysis.strip()}" for i, analysis in enumerate(analyses, 1)
    )
    return TEXTBOOK_FINAL_PROMPT.format(
        analyses=sections, plot_direction=_plot_direction_line(plot_direction)
    )
