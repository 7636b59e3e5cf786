"""Gemini analysis, render and upscale gateway.

Uses the Google GenAI SDK's async client. Every call takes the API key
explicitly so a caller-supplied credential always wins over the
environment.
"""

import asyncio
import base64
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional

from ..errors import ParseError, PreconditionError, RemoteServiceError
from ..models.script import (
    SCRIPT_DEFAULTS,
    AnalysisOptions,
    AppModel,
    GridArity,
    VisualScript,
)
from ..utils.image_utils import ImagePayload, compress_image, guess_mime_type

logger = logging.getLogger(__name__)

ANALYSIS_MODEL = "gemini-3-pro-preview"
ANALYSIS_THINKING_BUDGET = 4000

# Words that make the upscaler think it is drawing more than one frame
_MULTI_FRAME_PATTERN = re.compile(
    r"grid|3x3|2x2|matrix|cells|shots|layout|sequence|collection|multiple|set of|nine|four",
    re.IGNORECASE,
)
_FRAME_TAG_PATTERN = re.compile(r"FRAME_\d+", re.IGNORECASE)
_CODE_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)


@dataclass
class RenderOutput:
    """Result from a render call."""

    image: ImagePayload
    prompt_used: str
    model: str
    generation_time: float


@dataclass
class UpscaleOutput:
    """Result from an upscale call.

    ``fallback`` is set when the response carried no image and the
    original tile was handed back unchanged.
    """

    image: ImagePayload
    prompt_used: str
    generation_time: float
    fallback: bool = False


def to_single_frame(description: str) -> str:
    """Strip language that implies several frames from a tile description."""
    solo = _MULTI_FRAME_PATTERN.sub("single", description)
    solo = _FRAME_TAG_PATTERN.sub("the specific frame", solo)
    return solo.strip()


def _text_field(data: dict, key: str, default: str) -> str:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        value = json.dumps(value, ensure_ascii=False) if isinstance(value, (dict, list)) else str(value)
    return value.strip() or default


def parse_visual_script(text: Optional[str]) -> VisualScript:
    """
    Parse the analysis model's JSON reply into a VisualScript.

    Missing or blank fields are filled from SCRIPT_DEFAULTS. Only a reply
    that is not a JSON object at all is rejected.

    Args:
        text: Raw response text, possibly wrapped in Markdown code fences

    Returns:
        VisualScript with every field populated

    Raises:
        ParseError: If the text is not a JSON object
    """
    if not text or not text.strip():
        raise ParseError("Empty analysis response")

    cleaned = _CODE_FENCE_PATTERN.sub("", text).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ParseError(f"Analysis response is not valid JSON: {e}", cause=e) from e

    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")

    arity_tag = data.get("gridType", data.get("grid_arity", data.get("gridArity")))
    arity = GridArity.parse(arity_tag)

    raw_shots = data.get("shots")
    if isinstance(raw_shots, list):
        shots = [s if isinstance(s, str) else json.dumps(s, ensure_ascii=False) for s in raw_shots if s]
    else:
        shots = []

    fields = {key: _text_field(data, key, default) for key, default in SCRIPT_DEFAULTS.items()}
    return VisualScript(
        **fields,
        composition=f"MASTER_LAYOUT: {arity.value}",
        grid_arity=arity,
        shots=shots,
    )


class GeminiService:
    """Gateway to the hosted Gemini models.

    See: https://ai.google.dev/gemini-api/docs/image-generation
    """

    PROMPTS = {
        "analyze": (
            "You are a world-class fashion photography director, an anatomy-aware "
            "visual expert and a master of composition.\n\n"
            "Analyze the two uploaded images and write a HIGH-FIDELITY visual script "
            "for an image model.\n\n"
            "CORE TASKS:\n"
            "1. LAYOUT: Decide whether image 2 is a single frame, a 2x2 grid or a 3x3 grid.\n"
            "2. IDENTITY LOCK: Extract the face geometry, demeanour and hair detail "
            "of the person in image 1.\n"
            "3. ANATOMY AND AESTHETICS: For every cell of image 2 describe the shot "
            "size and camera angle, and the body state: finger placement, direction "
            "of the feet, joint angles, hand gestures and leg lines.\n\n"
            "SHOT RULES:\n"
            "- Never describe a frame showing only the back or hiding the face.\n"
            "- Every frame: [shot size] + [camera angle] + [core action] + "
            "[hand/foot detail] + [lighting mood].\n"
            "- Vocabulary: Photorealistic, 8k resolution, cinematic atmosphere, "
            "perfect anatomy, high-end skin texture.\n"
        ),
        "analyze_schema": (
            "Return strict JSON:\n"
            "{\n"
            '  "subject": "very detailed facial description",\n'
            '  "appearance": "clothing materials and colours",\n'
            '  "physique": "body proportions and posture",\n'
            '  "background": "environment and light distribution",\n'
            '  "style": "overall art style and quality level",\n'
            '  "gridType": "single or 4-grid or 9-grid",\n'
            '  "shots": ["one long description per grid cell ..."]\n'
            "}"
        ),
        "clone_style": "Copy the lighting, colour grading and photographic style of image 2.",
        "keep_style": "Keep a neutral high-end studio style; do not copy the look of image 2.",
        "clone_hair": "Give the person the hairstyle shown in image 2.",
        "keep_hair": "Keep the person's own hairstyle from image 1.",
        "clone_expression": "Match the facial expression of each frame in image 2.",
        "keep_expression": "Keep the facial expression from image 1 in every frame.",
        "render": (
            "DIRECTIVE: CREATE A {layout} FEATURING A HIGH-END FASHION EDITORIAL.\n\n"
            "CRITICAL RULES:\n"
            "1. FACE FIDELITY: CHARACTER FACE MUST BE IDENTICAL TO THE ATTACHED IMAGE.\n"
            "2. ANATOMICAL PERFECTION: FOCUS ON PERFECT HANDS, FINGERS, AND FEET POSITIONS.\n"
            "3. NO REPETITION: EACH FRAME MUST BE A UNIQUE POSE AND SHOT TYPE AS DESCRIBED.\n"
            "4. FACE VISIBILITY: ENSURE THE FACE IS VISIBLE IN ALL FRAMES.\n\n"
            "VISUAL CONTEXT:\n"
            "SUBJECT: {subject}\n"
            "PHYSIQUE: {physique}\n"
            "STYLE: {style}, {quality}\n"
            "ENVIRONMENT: {background}\n"
            "CLOTHING: {appearance}\n\n"
            "FRAME BY FRAME GUIDANCE:\n"
            "{frames}"
        ),
        "upscale": (
            "TASK: CRYSTAL CLEAR 2K FIDELITY ENHANCEMENT.\n\n"
            "GOAL: IMPROVE REALISM AND CORRECT ANATOMY WITHOUT CHANGING THE ORIGINAL COMPOSITION.\n\n"
            "STRICT OPERATIONAL DIRECTIVES:\n"
            "1. MAINTAIN POSE: DO NOT CHANGE THE PERSON'S POSE, COMPOSITION, OR CAMERA ANGLE.\n"
            "2. ANATOMY CORRECTION: IF HANDS, FINGERS, OR FEET ARE DISTORTED, REPAIR THEM "
            "TO BE PHYSICALLY ACCURATE.\n"
            "3. REALISM: ENHANCE SKIN PORES, FABRIC TEXTURE, AND EYE SPECULAR HIGHLIGHTS.\n"
            "4. SINGLE FRAME: ENSURE THIS REMAINS ONE SINGLE PORTRAIT. REMOVE ANY MINI-GRIDS "
            "OR BORDERS.\n\n"
            "CONTEXTUAL GUIDE: {description}"
        ),
    }

    # Output resolution per request type
    IMAGE_SIZES = {
        "render_single": "2K",
        "render_grid": "4K",
        "upscale": "2K",
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        analysis_model: str = ANALYSIS_MODEL,
        upscale_model: AppModel = AppModel.PRO,
        request_timeout: Optional[float] = 180.0,
        max_input_size: int = 2048,
    ):
        """
        Initialize Gemini service.

        Args:
            api_key: Default Google API key (falls back to GOOGLE_API_KEY env var)
            analysis_model: Text model used for script analysis
            upscale_model: Image model used for tile upscales
            request_timeout: Seconds before a remote call is abandoned (None for no limit)
            max_input_size: Longest side of images sent to the model
        """
        self.api_key = api_key or os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
        self.analysis_model = analysis_model
        self.upscale_model = AppModel(upscale_model)
        self.request_timeout = request_timeout
        self.max_input_size = max_input_size
        self._clients: dict[str, object] = {}

    def resolve_api_key(self, api_key: Optional[str] = None) -> str:
        """Pick the caller's key over the default, failing if neither exists."""
        key = (api_key or "").strip() or self.api_key
        if not key:
            raise PreconditionError(
                "Google API key required. Pass an API key or set GOOGLE_API_KEY."
            )
        return key

    def client(self, api_key: Optional[str] = None):
        """Lazily create (and cache) a GenAI client for a key."""
        key = self.resolve_api_key(api_key)
        if key not in self._clients:
            from google import genai

            self._clients[key] = genai.Client(api_key=key)
        return self._clients[key]

    def build_analysis_prompt(self, options: Optional[AnalysisOptions] = None) -> str:
        options = options or AnalysisOptions()
        toggles = [
            self.PROMPTS["clone_style" if options.clone_style else "keep_style"],
            self.PROMPTS["clone_hair" if options.clone_hair else "keep_hair"],
            self.PROMPTS["clone_expression" if options.clone_expression else "keep_expression"],
        ]
        return (
            self.PROMPTS["analyze"]
            + "\nREFERENCE HANDLING:\n"
            + "\n".join(f"- {t}" for t in toggles)
            + "\n\n"
            + self.PROMPTS["analyze_schema"]
        )

    def build_render_prompt(self, script: VisualScript) -> str:
        """Build the single directive for a composite render."""
        script = script.reconciled()
        frames = "\n\n".join(f"FRAME_{i + 1}: {shot}" for i, shot in enumerate(script.shots))
        return self.PROMPTS["render"].format(
            layout=script.grid_arity.label,
            subject=script.subject,
            physique=script.physique,
            style=script.style,
            quality=script.quality,
            background=script.background,
            appearance=script.appearance,
            frames=frames,
        )

    def build_upscale_prompt(self, description: str) -> str:
        return self.PROMPTS["upscale"].format(description=to_single_frame(description))

    async def analyze(
        self,
        character_image: ImagePayload,
        reference_image: ImagePayload,
        api_key: Optional[str] = None,
        options: Optional[AnalysisOptions] = None,
    ) -> VisualScript:
        """
        Analyze a portrait and a composition reference into a visual script.

        Args:
            character_image: Portrait whose identity should be kept
            reference_image: Single frame or grid whose composition should be copied
            api_key: Credential for this call
            options: Style, hair and expression toggles

        Returns:
            Parsed VisualScript
        """
        from google.genai import types

        client = self.client(api_key)
        prompt = self.build_analysis_prompt(options)
        contents = [
            self._to_part(compress_image(character_image, max_size=self.max_input_size)),
            self._to_part(compress_image(reference_image, max_size=self.max_input_size)),
            prompt,
        ]
        logger.debug("Analysis prompt:\n%s", prompt)

        start_time = time.time()
        response = await self._call(
            "analyze",
            client.aio.models.generate_content(
                model=self.analysis_model,
                contents=contents,
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    thinking_config=types.ThinkingConfig(thinking_budget=ANALYSIS_THINKING_BUDGET),
                ),
            ),
        )
        logger.info("Analysis finished in %.1fs", time.time() - start_time)

        script = parse_visual_script(self._extract_text_from_response(response))
        if len(script.shots) != script.tile_count:
            logger.warning(
                "Analysis returned %d shots for %s (%d tiles)",
                len(script.shots),
                script.grid_arity.value,
                script.tile_count,
            )
        return script

    async def render(
        self,
        model: AppModel,
        script: VisualScript,
        api_key: Optional[str],
        character_image: ImagePayload,
        aspect_ratio: str = "1:1",
    ) -> RenderOutput:
        """
        Render the composite image described by a script.

        Args:
            model: Image model variant
            script: Visual script (shots are reconciled to the tile count)
            api_key: Credential for this call
            character_image: Portrait used for face fidelity
            aspect_ratio: Target aspect ratio

        Returns:
            RenderOutput with the composite image

        Raises:
            RemoteServiceError: If the call fails or returns no image
        """
        from google.genai import types

        model = AppModel(model)
        client = self.client(api_key)
        prompt = self.build_render_prompt(script)
        size_key = "render_single" if script.grid_arity is GridArity.SINGLE else "render_grid"
        logger.debug("Render prompt:\n%s", prompt)

        start_time = time.time()
        response = await self._call(
            "render",
            client.aio.models.generate_content(
                model=model.value,
                contents=[
                    self._to_part(compress_image(character_image, max_size=self.max_input_size)),
                    prompt,
                ],
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE"],
                    image_config=types.ImageConfig(
                        aspect_ratio=aspect_ratio,
                        image_size=self.IMAGE_SIZES[size_key],
                    ),
                ),
            ),
        )
        generation_time = time.time() - start_time

        image = self._extract_image_from_response(response)
        if image is None:
            raise RemoteServiceError("render", "The model returned no image")

        logger.info("Rendered %s composite in %.1fs", script.grid_arity.value, generation_time)
        return RenderOutput(
            image=image,
            prompt_used=prompt,
            model=model.value,
            generation_time=generation_time,
        )

    async def upscale(
        self,
        tile_image: ImagePayload,
        tile_description: str,
        api_key: Optional[str],
        aspect_ratio: str = "1:1",
    ) -> UpscaleOutput:
        """
        Re-render one tile at higher fidelity without changing its composition.

        If the model answers without an image, the original tile comes back
        with ``fallback`` set instead of an error.

        Args:
            tile_image: Tile to enhance
            tile_description: Description of this tile only
            api_key: Credential for this call
            aspect_ratio: Aspect ratio of the original render

        Returns:
            UpscaleOutput with the enhanced (or original) tile
        """
        from google.genai import types

        client = self.client(api_key)
        prompt = self.build_upscale_prompt(tile_description)

        start_time = time.time()
        response = await self._call(
            "upscale",
            client.aio.models.generate_content(
                model=self.upscale_model.value,
                contents=[self._to_part(tile_image), prompt],
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE"],
                    image_config=types.ImageConfig(
                        aspect_ratio=aspect_ratio,
                        image_size=self.IMAGE_SIZES["upscale"],
                    ),
                ),
            ),
        )
        generation_time = time.time() - start_time

        image = self._extract_image_from_response(response)
        if image is None:
            logger.warning("Upscale returned no image; keeping the original tile")
            return UpscaleOutput(
                image=tile_image,
                prompt_used=prompt,
                generation_time=generation_time,
                fallback=True,
            )
        return UpscaleOutput(image=image, prompt_used=prompt, generation_time=generation_time)

    async def _call(self, stage: str, request):
        """Await a remote request, mapping every failure to RemoteServiceError."""
        try:
            if self.request_timeout:
                return await asyncio.wait_for(request, timeout=self.request_timeout)
            return await request
        except asyncio.TimeoutError as e:
            raise RemoteServiceError(
                stage, f"No response within {self.request_timeout:.0f}s", cause=e
            ) from e
        except Exception as e:
            raise RemoteServiceError(stage, str(e) or type(e).__name__, cause=e) from e

    def _to_part(self, payload: ImagePayload):
        from google.genai import types

        return types.Part.from_bytes(data=payload.data, mime_type=payload.mime_type)

    def _extract_text_from_response(self, response) -> str:
        text = getattr(response, "text", None)
        if isinstance(text, str):
            return text
        raise ParseError("Analysis response carried no text")

    def _extract_image_from_response(self, response) -> Optional[ImagePayload]:
        """Return the first inline image in a Gemini response, or None.

        The google-genai SDK returns inline data as bytes; older payloads may
        carry a base64 string instead.
        """
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return None
        content = getattr(candidates[0], "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            inline_data = getattr(part, "inline_data", None)
            if inline_data is None:
                continue
            image_data = inline_data.data
            if isinstance(image_data, str):
                image_data = base64.b64decode(image_data)
            if not isinstance(image_data, bytes) or not image_data:
                continue
            mime_type = getattr(inline_data, "mime_type", None)
            if not isinstance(mime_type, str):
                mime_type = guess_mime_type(image_data)
            return ImagePayload(data=image_data, mime_type=mime_type)
        return None
