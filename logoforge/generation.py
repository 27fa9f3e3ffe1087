"""
logoforge/generation.py

Image generation client - the costly action behind the deduction gate.

Calls the OpenAI images API and returns the URL of one generated logo.
Every failure is raised as UpstreamProviderError so the gate can refund:
    - non-2xx response -> provider status and message passed through
    - timeout / connection error -> 502
    - 2xx without an image URL -> 502
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from logoforge.errors import UpstreamProviderError

logger = logging.getLogger(__name__)


class ImageGenerator:
    """OpenAI image generation over HTTP."""

    name = "OpenAI Images"
    base_url = "https://api.openai.com/v1/images/generations"

    def __init__(self, api_key: str = '', model: str = 'dall-e-3', timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
        })

    def generate(self, prompt: str) -> str:
        """
        Generate one 1024x1024 logo.

        Returns:
            URL of the generated image
        """
        if not self.api_key:
            raise UpstreamProviderError('Image generation is not configured')

        payload = {
            'model': self.model,
            'prompt': prompt,
            'size': '1024x1024',
            'quality': 'hd',
            'n': 1,
            'response_format': 'url',
        }
        response = self._make_request(payload)

        if not response.ok:
            message = _error_message(response) or 'Image generation failed'
            logger.warning("[%s] HTTP %s: %s", self.name, response.status_code, message)
            raise UpstreamProviderError(message, response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise UpstreamProviderError('Invalid response from image provider')

        image_url = _first_url(data.get('data'))
        if not image_url:
            raise UpstreamProviderError('No image URL returned from image provider')
        return image_url

    def _make_request(self, payload: Dict[str, Any]) -> requests.Response:
        try:
            return self.session.post(
                self.base_url,
                json=payload,
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("[%s] Timed out after %ss", self.name, self.timeout)
            raise UpstreamProviderError('Image generation timed out')
        except requests.RequestException as e:
            logger.warning("[%s] Request failed: %s", self.name, e)
            raise UpstreamProviderError('Image provider unreachable')


def _error_message(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    error = body.get('error') if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get('message')
    return error if isinstance(error, str) else None


def _first_url(items: Optional[List[dict]]) -> Optional[str]:
    if not items:
        return None
    first = items[0]
    return first.get('url') if isinstance(first, dict) else None


# =============================================================================
# PROMPT
# =============================================================================

def build_logo_prompt(request: Dict[str, Any]) -> str:
    """Turn a logo request into the image prompt."""
    company_name = (request.get('companyName') or '').strip()
    keywords = request.get('keywords') or []
    if isinstance(keywords, str):
        keywords = [k.strip() for k in keywords.split(',') if k.strip()]

    return (
        f'Design one finished, professional logo for "{company_name}".\n'
        f'Industry: {request.get("industry") or "general"}\n'
        f'Description: {request.get("description") or "n/a"}\n'
        f'Style: {request.get("style") or "modern"}\n'
        f'Color scheme: {request.get("colorScheme") or "designer choice"}\n'
        f'Brand attributes: {", ".join(keywords) or "clear, memorable, professional"}\n'
        'Centered on a plain background, no mockups, no extra text besides the name.'
    )
