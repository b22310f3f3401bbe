"""Image preparation and the scene description service."""

import os
import time
from io import BytesIO
from pathlib import Path

import rawpy
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings


DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "60"))

NON_RAW_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".bmp",
        ".gif",
        ".jpe",
        ".jp2",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".avif",
        ".psd",
        ".ico",
        ".ppm",
        ".pgm",
        ".pbm",
    },
)

DESCRIPTION_SYSTEM_PROMPT = (
    "You name photographs. Look at the image and describe its main subject and setting in "
    "three to six plain words, suitable for a filename: lowercase, no punctuation, no file "
    "extension, no dates and no people's names."
)
DESCRIPTION_USER_PROMPT = "Describe this photo for its filename."


class SceneDescription(BaseModel):
    """Schema for the description agent's structured output."""

    description: str = Field(description="Three to six lowercase words, subject then setting")


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix in NON_RAW_EXTENSIONS:
        logger.debug("skipping_rawpy_for_known_format", extension=suffix)
    else:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()  # 8-bit RGB np.ndarray
            logger.debug("image_opened_with_rawpy")
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    return Image.open(image_path)


def prepare_image(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Load an image (RAW or standard), downscale it and encode it as an in-memory JPEG.

    The same bytes are sent to both the detection and the description services.

    Args:
        image_path: Path to the input image file
        jpg_quality: JPEG compression quality (1-100)
        max_size: Maximum dimension in pixels for resizing

    Returns:
        BinaryContent ready for a Pydantic AI agent

    """
    img = _pil_from_image_path(image_path)

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        alpha = img.convert("RGBA")
        bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
        img = Image.alpha_composite(bg, alpha).convert("RGB")
    else:
        img = img.convert("RGB")

    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()
    logger.debug(
        "image_prepared_for_agent",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


def describe_scene(
    image: BinaryContent,
    agent: Agent,
    *,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    timeout: float | None = None,
) -> str:
    """
    Ask the description service for a short scene description.

    Errors propagate; the pipeline turns them into a fallback name.

    Args:
        image: Image data as BinaryContent (JPEG format)
        agent: Configured Pydantic AI Agent
        temperature: Sampling temperature for generation (0.0-1.0)
        max_tokens: Maximum tokens to generate in response
        timeout: Per-request timeout in seconds

    Returns:
        The description text, stripped. May still need sanitizing for filenames.

    Raises:
        ValueError: if the model returned an empty description.

    """
    settings = ModelSettings(temperature=temperature, max_tokens=max_tokens)
    if timeout is not None:
        settings["timeout"] = timeout

    logger.info("describing_scene")
    _t0 = time.perf_counter()
    result: AgentRunResult[SceneDescription] = agent.run_sync(
        [DESCRIPTION_USER_PROMPT, image],
        model_settings=settings,
        output_type=SceneDescription,
    )
    description = result.output.description.strip()
    logger.info(
        "scene_described",
        seconds=round(time.perf_counter() - _t0, 3),
        description=description,
    )
    if not description:
        msg = "description service returned an empty description"
        raise ValueError(msg)
    return description
