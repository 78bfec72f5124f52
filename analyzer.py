import os
import time
import json
import base64
import logging
import threading
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image as PILImage, UnidentifiedImageError

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage

from prompts import FEATURE_TYPES, get_prompt_config
from geom.tile_math import BoundingBox

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic/claude-sonnet-4"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# Midpoints of the bands the prompt describes
CONFIDENCE_VALUES = {"high": 0.85, "medium": 0.60, "low": 0.35}


class DetectionError(Exception):
    """The detection call failed or its answer could not be parsed."""


def confidence_to_number(level: str) -> float:
    try:
        return CONFIDENCE_VALUES[str(level).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown confidence level: {level!r}")


@dataclass
class DetectedFeature:
    kind: str
    confidence_level: str
    x: float
    y: float
    size_meters: Optional[float] = None
    rationale: str = ""

    @property
    def confidence(self) -> float:
        return confidence_to_number(self.confidence_level)


@dataclass
class DetectionResult:
    features: List[DetectedFeature] = field(default_factory=list)
    rationale: str = ""
    model_id: str = ""
    processing_time: float = 0.0  # seconds


def locate_feature(feature: DetectedFeature, tile_bbox: BoundingBox) -> Tuple[float, float]:
    """Map a feature's relative image position onto the tile's ground footprint.

    (0, 0) is the north-west corner of the image, (1, 1) the south-east.
    """
    lat = tile_bbox.north - (tile_bbox.north - tile_bbox.south) * feature.y
    lng = tile_bbox.west + (tile_bbox.east - tile_bbox.west) * feature.x
    return lat, lng


# ---------- response parsing ----------
def extract_json(text: str) -> Optional[Dict[str, Any]]:
    text = text.strip()
    # Try direct parse
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Attempt to extract the first {...} block
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        snippet = text[start : end + 1]
        try:
            return json.loads(snippet)
        except json.JSONDecodeError:
            return None
    return None


def _clamp01(v: Any) -> float:
    return max(0.0, min(1.0, float(v)))


def _parse_feature(raw: Dict[str, Any]) -> Optional[DetectedFeature]:
    level = str(raw.get("confidence", "")).strip().lower()
    if level not in CONFIDENCE_VALUES:
        logger.warning("Dropping feature with unrecognised confidence %r", raw.get("confidence"))
        return None
    loc = raw.get("location")
    if not isinstance(loc, dict):
        logger.warning("Dropping feature without a location: %r", raw)
        return None
    try:
        x = _clamp01(loc.get("x"))
        y = _clamp01(loc.get("y"))
    except (TypeError, ValueError):
        logger.warning("Dropping feature without a usable location: %r", loc)
        return None
    kind = str(raw.get("type") or "other").strip().lower()
    if kind not in FEATURE_TYPES:
        kind = "other"
    size = raw.get("sizeMeters")
    try:
        size_meters = float(size) if size is not None else None
    except (TypeError, ValueError):
        size_meters = None
    return DetectedFeature(
        kind=kind,
        confidence_level=level,
        x=x,
        y=y,
        size_meters=size_meters,
        rationale=str(raw.get("description") or ""),
    )


def parse_detection_payload(payload: Any) -> Tuple[List[DetectedFeature], str]:
    """Validate the model's JSON answer and turn it into features.

    The overall shape must be right or the whole answer is rejected; a single
    malformed feature is dropped with a warning.
    """
    if not isinstance(payload, dict):
        raise DetectionError("Detection response is not a JSON object")
    raw_features = payload.get("features", [])
    if not isinstance(raw_features, list):
        raise DetectionError("'features' must be a list")
    features = []
    for raw in raw_features:
        if not isinstance(raw, dict):
            logger.warning("Dropping non-object feature entry: %r", raw)
            continue
        feat = _parse_feature(raw)
        if feat is not None:
            features.append(feat)
    return features, str(payload.get("overallAssessment") or "")


# ---------- LLM plumbing ----------
def encode_image_bytes_as_data_url(image_bytes: bytes, quality: int = 92) -> str:
    """Re-encode whatever the imagery source returned as an RGB JPEG data URL."""
    try:
        img = PILImage.open(BytesIO(image_bytes))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise DetectionError(f"Imagery is not a decodable image: {e}")
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    b64 = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{b64}"


def _invoke_with_timeout(fn, args: tuple, timeout_sec: float):
    """Run a blocking function in a helper thread and enforce a timeout.

    Returns (ok: bool, result_or_exc: Any). If ok is False and result is TimeoutError, the call timed out.
    """
    result_box = {"done": False, "value": None}

    def runner():
        try:
            result_box["value"] = fn(*args)
        except Exception as e:
            result_box["value"] = e
        finally:
            result_box["done"] = True

    t = threading.Thread(target=runner, daemon=True)
    t.start()
    t.join(timeout=timeout_sec)
    if not result_box["done"]:
        return False, TimeoutError(f"invoke timeout after {timeout_sec}s")
    val = result_box["value"]
    if isinstance(val, Exception):
        return False, val
    return True, val


def build_langchain_llm(model: str, api_key: str) -> ChatOpenAI:
    return ChatOpenAI(
        model=model,
        api_key=api_key,
        base_url=OPENROUTER_BASE_URL,
        temperature=0,
        model_kwargs={"response_format": {"type": "json_object"}},
        default_headers={
            "HTTP-Referer": "https://local.script",
            "X-Title": "Archaeological region scanner",
        },
    )


def _content_text(ai_msg: Any) -> str:
    content = getattr(ai_msg, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for p in content:
            if isinstance(p, dict) and isinstance(p.get("text"), str):
                parts.append(p["text"])
        return "\n".join(parts)
    return ""


class FeatureDetector:
    """Vision-model collaborator: image bytes in, DetectionResult out.

    ``llm`` is anything with a LangChain-style ``invoke(messages)`` returning a
    message with ``.content``; production uses ChatOpenAI pointed at OpenRouter.
    """

    def __init__(
        self,
        llm: Any,
        model_id: str = DEFAULT_MODEL,
        *,
        max_retries: int = 2,
        timeout_sec: float = 60.0,
        prompts: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.model_id = model_id
        self.max_retries = max_retries
        self.timeout_sec = timeout_sec
        self.prompts = prompts or get_prompt_config()
        self._sleep = sleep

    @classmethod
    def from_env(cls, model: Optional[str] = None) -> "FeatureDetector":
        api_key = os.getenv("OPENROUTER_API_KEY")
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is not set (put it in the environment or .env)")
        model = model or os.getenv("SCANNER_MODEL", DEFAULT_MODEL)
        return cls(build_langchain_llm(model, api_key), model_id=model)

    def _messages(self, image_data_url: str) -> list:
        return [
            SystemMessage(content=self.prompts["system_prompt"]),
            HumanMessage(
                content=[
                    {"type": "text", "text": self.prompts["detection_prompt"]},
                    {"type": "image_url", "image_url": {"url": image_data_url}},
                ]
            ),
        ]

    def detect(self, image_bytes: bytes) -> DetectionResult:
        started = time.monotonic()
        messages = self._messages(encode_image_bytes_as_data_url(image_bytes))

        attempt = 0
        while True:
            attempt += 1
            ok, val = _invoke_with_timeout(self.llm.invoke, (messages,), self.timeout_sec)
            if ok:
                break
            if attempt <= self.max_retries:
                backoff = min(2 ** (attempt - 1), 30)
                logger.debug("Detection attempt %d failed (%s); retrying in %ss", attempt, val, backoff)
                self._sleep(backoff)
                continue
            raise DetectionError(f"llm_timeout_or_error: {val.__class__.__name__}: {val}")

        text = _content_text(val)
        payload = extract_json(text)
        if payload is None:
            raise DetectionError(f"No JSON in detection response: {text[:200]!r}")
        features, rationale = parse_detection_payload(payload)
        return DetectionResult(
            features=features,
            rationale=rationale,
            model_id=self.model_id,
            processing_time=time.monotonic() - started,
        )
