"""
AI triage

Summarizes an SOS photo plus the requester's medical history into a short
triage assessment using a vision LLM.

Features:
- TriageService interface used by the dispatch engine
- Groq (OpenAI-compatible) chat-completions client over aiohttp
- Base64 image normalisation before upload
- Same-shape fallback assessment on any failure; never raises
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from lifeline.models.emergency import TriageAssessment


SYSTEM_PROMPT = """
You are a medical triage AI. Analyze the image and medical history. Try to infer the location of the image as well.
CRITICAL RULES:
1. Return ONLY valid JSON.
2. Structure: { "condition": string, "severity": "High"|"Medium"|"Low", "reasoning": string, "action": string, "location": string }
3. If the image is unclear, set condition to "Unclear".
""".strip()

_DATA_URI_HEADER = re.compile(r'^data:image/[a-z]+;base64,')
_NON_BASE64 = re.compile(r'[^A-Za-z0-9+/=]')


@dataclass
class TriageConfig:
    """Configuration for the triage service"""
    enabled: bool = False
    api_key: Optional[str] = None
    service_url: str = "https://api.groq.com/openai/v1"
    model_name: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    temperature: float = 0.1
    max_tokens: int = 512
    timeout_seconds: float = 6.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TriageConfig':
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


class TriageService(ABC):
    """Abstract AI triage summarizer"""

    enabled: bool = True

    @abstractmethod
    async def assess(self, image: str, medical_history: List[Any]) -> TriageAssessment:
        """Assess an emergency photo; must return a placeholder instead of raising"""
        pass

    async def close(self) -> None:
        pass


def normalize_image(image: str) -> str:
    """Strip any data-URI header and junk characters, fix padding, re-prefix as JPEG"""
    clean = _DATA_URI_HEADER.sub("", image.strip())
    clean = _NON_BASE64.sub("", clean)
    missing_padding = len(clean) % 4
    if missing_padding:
        clean += '=' * (4 - missing_padding)
    return f"data:image/jpeg;base64,{clean}"


def format_medical_history(medical_history: Optional[List[Any]]) -> str:
    if not medical_history:
        return "No known pre-existing conditions"
    if isinstance(medical_history[0], dict):
        return ", ".join(
            f"{item.get('condition')} (Treatment: {item.get('treatment') or 'None'})"
            for item in medical_history
        )
    return ", ".join(str(item) for item in medical_history)


class GroqTriageService(TriageService):
    """Groq vision model integration"""

    def __init__(self, config: TriageConfig):
        self.config = config
        self.enabled = config.enabled and bool(config.api_key)
        self.logger = logging.getLogger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        """Ensure HTTP session is available"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

    def build_payload(self, image: str, medical_history: Optional[List[Any]]) -> Dict[str, Any]:
        history = format_medical_history(medical_history)
        return {
            "model": self.config.model_name,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": f"Patient History: {history}. Analyze this image."},
                        {"type": "image_url", "image_url": {"url": normalize_image(image)}}
                    ]
                }
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"}
        }

    async def assess(self, image: str, medical_history: List[Any]) -> TriageAssessment:
        if not self.enabled:
            return TriageAssessment.placeholder("Triage service disabled")

        try:
            await self._ensure_session()
            headers = {
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json"
            }
            async with self.session.post(
                f"{self.config.service_url}/chat/completions",
                headers=headers,
                json=self.build_payload(image, medical_history)
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    self.logger.warning(f"Groq API error {response.status}: {error_text}")
                    return TriageAssessment.placeholder(f"Groq API error ({response.status})")
                data = await response.json()

            content = data["choices"][0]["message"]["content"]
            if not content:
                return TriageAssessment.placeholder("Empty response from Groq")

            return TriageAssessment.from_dict(json.loads(content))

        except Exception as e:
            self.logger.error(f"Assessment failed: {e}")
            return TriageAssessment.placeholder(str(e) or type(e).__name__)

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
