"""
Stone analysis requests, prompts and reply parsing.

The only domain-aware part of the client: it knows what a stone analysis
looks like on the wire. Transport, retries and accounting live elsewhere.
"""

import base64
import json
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import AnalysisParseError

MAX_IMAGE_BYTES = 4 * 1024 * 1024
SUPPORTED_EXTENSIONS = ("jpeg", "jpg", "png", "webp")


class ImageFormat(Enum):
    """Image encodings accepted by the provider."""
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"

    @classmethod
    def from_extension(cls, extension: str) -> "ImageFormat":
        """Map a file extension (with or without dot) to a format.

        Raises:
            ValueError: If the extension is not a supported image type
        """
        ext = extension.lower().lstrip(".")
        if ext == "jpg":
            ext = "jpeg"
        return cls(ext)


class AnalysisType(Enum):
    """How much the provider is asked to describe."""
    IDENTIFICATION = "identification"
    PROPERTIES = "properties"
    FULL = "full"


@dataclass(frozen=True)
class ImageValidation:
    """Outcome of checking an image before upload."""
    valid: bool
    error: Optional[str] = None


def validate_image(filename: str, size: int, max_bytes: int = MAX_IMAGE_BYTES) -> ImageValidation:
    """Check an image's size and extension before it is sent anywhere.

    Args:
        filename: Image file name or path
        size: File size in bytes
        max_bytes: Largest accepted file

    Returns:
        ImageValidation with an error message when invalid
    """
    if size > max_bytes:
        return ImageValidation(
            False,
            f"Image too large. Maximum size is {max_bytes // (1024 * 1024)}MB."
        )

    extension = Path(filename).suffix.lower().lstrip(".")
    if extension not in SUPPORTED_EXTENSIONS:
        return ImageValidation(
            False,
            "Unsupported image format. Use a JPEG, PNG or WebP image."
        )

    return ImageValidation(True)


@dataclass(frozen=True)
class AnalysisRequest:
    """One image to analyze. Immutable once constructed."""
    image_data: str  # base64, no data-URI prefix
    image_format: ImageFormat
    analysis_type: AnalysisType = AnalysisType.FULL

    def __post_init__(self):
        """Validate request fields."""
        if not self.image_data:
            raise ValueError("image_data is required and cannot be empty")
        if not isinstance(self.image_format, ImageFormat):
            raise ValueError("image_format must be an ImageFormat")
        if not isinstance(self.analysis_type, AnalysisType):
            raise ValueError("analysis_type must be an AnalysisType")

    @property
    def data_uri(self) -> str:
        return f"data:image/{self.image_format.value};base64,{self.image_data}"

    @classmethod
    def from_file(
        cls,
        path: str,
        analysis_type: AnalysisType = AnalysisType.FULL,
        max_bytes: int = MAX_IMAGE_BYTES,
    ) -> "AnalysisRequest":
        """Read, validate and base64-encode an image file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the image fails validation
        """
        image_path = Path(path)
        if not image_path.is_file():
            raise FileNotFoundError(f"Image not found: {path}")

        validation = validate_image(image_path.name, image_path.stat().st_size, max_bytes)
        if not validation.valid:
            raise ValueError(validation.error)

        encoded = base64.b64encode(image_path.read_bytes()).decode("ascii")
        return cls(
            image_data=encoded,
            image_format=ImageFormat.from_extension(image_path.suffix),
            analysis_type=analysis_type,
        )


@dataclass(frozen=True)
class StoneProperties:
    """Physical and metaphysical properties of an identified stone."""
    hardness: float
    color: str
    category: str
    origin: str
    chakra: Optional[str] = None
    healing_properties: List[str] = field(default_factory=list)
    metaphysical_properties: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "hardness": self.hardness,
            "color": self.color,
            "category": self.category,
            "origin": self.origin,
            "healingProperties": list(self.healing_properties),
            "metaphysicalProperties": list(self.metaphysical_properties),
        }
        if self.chakra is not None:
            result["chakra"] = self.chakra
        return result


@dataclass(frozen=True)
class AlternativePossibility:
    """Another stone the image could show."""
    name: str
    confidence: float


@dataclass(frozen=True)
class AnalysisResult:
    """A successfully parsed stone analysis."""
    stone_name: str
    confidence: float  # 0-100
    properties: StoneProperties
    description: str
    alternative_possibilities: Optional[List[AlternativePossibility]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape (camelCase), as the provider was asked to return it."""
        result = {
            "stoneName": self.stone_name,
            "confidence": self.confidence,
            "properties": self.properties.to_dict(),
            "description": self.description,
        }
        if self.alternative_possibilities is not None:
            result["alternativePossibilities"] = [
                {"name": alt.name, "confidence": alt.confidence}
                for alt in self.alternative_possibilities
            ]
        return result


_BASE_PROMPT = """
Analyze this stone/crystal image and provide detailed information in JSON format.

Please identify:
1. Stone name and type
2. Physical properties (hardness, color, category, origin)
3. Healing and metaphysical properties
4. Confidence level (0-100)
5. Alternative possibilities if uncertain

Return response in this exact JSON format:
{
  "stoneName": "string",
  "confidence": number,
  "properties": {
    "hardness": number,
    "color": "string",
    "category": "string",
    "origin": "string",
    "chakra": "string",
    "healingProperties": ["string"],
    "metaphysicalProperties": ["string"]
  },
  "description": "string",
  "alternativePossibilities": [
    {
      "name": "string",
      "confidence": number
    }
  ]
}
"""

_FOCUS = {
    AnalysisType.IDENTIFICATION: "Focus primarily on stone identification and basic properties.",
    AnalysisType.PROPERTIES: "Focus on detailed healing and metaphysical properties.",
    AnalysisType.FULL: "Provide comprehensive analysis including all aspects.",
}


def build_prompt(analysis_type: AnalysisType) -> str:
    """Instruction text sent alongside the image."""
    return f"{_BASE_PROMPT}\n{_FOCUS[analysis_type]}"


def build_messages(request: AnalysisRequest) -> List[Dict[str, Any]]:
    """Chat messages embedding the prompt and the image data URI."""
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": build_prompt(request.analysis_type)},
                {"type": "image_url", "image_url": {"url": request.data_uri}},
            ],
        }
    ]


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def _finite_number(value: Any) -> Optional[float]:
    """``value`` as a finite float, or None if it is not a usable number."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def extract_json_object(content: str) -> Dict[str, Any]:
    """Pull the JSON object out of a free-text reply.

    Everything between the first ``{`` and the last ``}`` is parsed, so
    prose before and after the object is ignored.

    Raises:
        AnalysisParseError: If no object is found or it is not valid JSON
    """
    match = _JSON_OBJECT.search(content)
    if not match:
        raise AnalysisParseError("No JSON found in response")
    # ValueError also covers integer literals past the int-conversion limit
    try:
        parsed = json.loads(match.group(0))
    except ValueError as e:
        raise AnalysisParseError(f"Invalid JSON in response: {e}") from e
    if not isinstance(parsed, dict):
        raise AnalysisParseError("Response JSON is not an object")
    return parsed


def parse_analysis_response(payload: Dict[str, Any]) -> AnalysisResult:
    """Turn a chat-completion payload into an ``AnalysisResult``.

    Only ``stoneName`` (non-empty string) and ``confidence`` (number) are
    required; other fields fall back to empty values when missing or
    malformed.

    Args:
        payload: Provider reply shaped as ``{choices: [{message: {content}}]}``

    Returns:
        The parsed analysis

    Raises:
        AnalysisParseError: If the reply holds no valid analysis
    """
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not isinstance(content, str) or not content.strip():
        raise AnalysisParseError("No content in API response")

    parsed = extract_json_object(content)

    stone_name = parsed.get("stoneName")
    confidence = _finite_number(parsed.get("confidence"))
    if not isinstance(stone_name, str) or not stone_name.strip() or confidence is None:
        raise AnalysisParseError("Invalid response format")

    props = parsed.get("properties")
    if not isinstance(props, dict):
        props = {}
    hardness = _finite_number(props.get("hardness"))
    chakra = props.get("chakra")

    alternatives = None
    raw_alternatives = parsed.get("alternativePossibilities")
    if isinstance(raw_alternatives, list):
        alternatives = []
        for alt in raw_alternatives:
            if not isinstance(alt, dict) or not isinstance(alt.get("name"), str):
                continue
            alt_confidence = _finite_number(alt.get("confidence"))
            if alt_confidence is not None:
                alternatives.append(AlternativePossibility(alt["name"], alt_confidence))

    return AnalysisResult(
        stone_name=stone_name.strip(),
        confidence=confidence,
        properties=StoneProperties(
            hardness=hardness if hardness is not None else 0.0,
            color=_text(props.get("color")),
            category=_text(props.get("category")),
            origin=_text(props.get("origin")),
            chakra=chakra if isinstance(chakra, str) and chakra else None,
            healing_properties=_strings(props.get("healingProperties")),
            metaphysical_properties=_strings(props.get("metaphysicalProperties")),
        ),
        description=_text(parsed.get("description")),
        alternative_possibilities=alternatives,
    )
