"""Client for the AI item classifier used to screen listing photos."""

import logging
from typing import Any, Dict, List

import requests

import config
from errors import RemoteServiceError

logger = logging.getLogger("rent2reuse.classifier")

UNKNOWN_BELOW = 20.0
HIGH_FROM = 70.0


def classify_image(data: bytes, filename: str = "image.jpg", content_type: str = "image/jpeg",
                   url: str = config.AI_MODEL_URL) -> List[Dict[str, Any]]:
    """POST the image as multipart field `image`; always returns a list."""
    try:
        response = requests.post(
            url,
            files={"image": (filename, data, content_type)},
            timeout=config.HTTP_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error("classifier request failed", extra={"error": str(e)})
        raise RemoteServiceError("We couldn't analyze this image. Please try again.")
    results = payload if isinstance(payload, list) else [payload]
    return [process_result(r) for r in results if isinstance(r, dict)]


def _confidence(value: Any) -> float:
    try:
        return float(str(value).replace("%", "").strip())
    except ValueError:
        return 0.0


def process_result(result: Dict[str, Any]) -> Dict[str, Any]:
    confidence = _confidence(result.get("Confidence"))
    return {
        "itemName": result.get("Predicted Item"),
        "category": result.get("Category", "N/A"),
        "confidence": confidence,
        "isProhibited": result.get("Category") == "Prohibited",
        "isUnknown": confidence < UNKNOWN_BELOW,
        "isLowConfidence": UNKNOWN_BELOW <= confidence < HIGH_FROM,
        "isHighConfidence": confidence >= HIGH_FROM,
    }
