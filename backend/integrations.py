"""
Outbound HTTP integrations.

- Image hosting: uploaded screenshots are forwarded to ImgBB and only the
  returned URLs are stored.
- Text refinement: issue and milestone text is rewritten by an
  OpenAI-compatible chat completions endpoint.

Both read their configuration from the environment on every call.
"""

import logging
import os
from typing import Optional, Dict, Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_IMGBB_UPLOAD_URL = "https://api.imgbb.com/1/upload"

# Shared HTTP client for outbound calls
http_client: Optional[httpx.AsyncClient] = None


class IntegrationNotConfigured(Exception):
    """Required environment configuration is missing."""


class IntegrationError(Exception):
    """The upstream service failed or returned an unusable response."""


async def get_client() -> httpx.AsyncClient:
    global http_client
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=60.0)
    return http_client


async def close_client() -> None:
    global http_client
    if http_client is not None:
        await http_client.aclose()
        http_client = None


# ============== Image Hosting ==============

async def upload_image(content: bytes, filename: str, content_type: str) -> Dict[str, Optional[str]]:
    """
    Forward an image to the image host.

    Returns:
        dict with url, delete_hash and thumbnail

    Raises:
        IntegrationNotConfigured: IMGBB_API_KEY is not set
        IntegrationError: upstream failure
    """
    api_key = os.getenv("IMGBB_API_KEY")
    if not api_key:
        raise IntegrationNotConfigured("Image upload is not configured")

    upload_url = os.getenv("IMGBB_UPLOAD_URL", DEFAULT_IMGBB_UPLOAD_URL)
    logger.debug(f"Uploading image {filename} ({len(content)} bytes) to image host")

    client = await get_client()
    try:
        response = await client.post(
            upload_url,
            params={"key": api_key},
            files={"image": (filename, content, content_type)},
        )
    except httpx.RequestError as e:
        logger.error(f"Image upload request failed: {e}")
        raise IntegrationError("Image host unreachable") from e

    if response.status_code >= 400:
        logger.error(f"Image host returned {response.status_code}: {response.text[:500]}")
        raise IntegrationError("Image upload failed")

    try:
        payload = response.json()
    except ValueError as e:
        raise IntegrationError("Invalid response from image host") from e

    data = payload.get("data") or {}
    if not payload.get("success") or not data.get("url"):
        logger.error(f"Image host rejected upload: {payload}")
        raise IntegrationError("Image upload failed")

    logger.info(f"Image uploaded: {data['url']}")
    return {
        "url": data["url"],
        "delete_hash": data.get("delete_url"),
        "thumbnail": (data.get("thumb") or {}).get("url"),
    }


# ============== Text Refinement ==============

SYSTEM_PROMPT = (
    "You are an expert technical writer and QA engineer. Your goal is to refine bug report "
    "content to be professional, grammatically perfect, and exceptionally clear. Use a formal "
    "yet simple tone that is easy for anyone to understand. Never include conversational filler "
    "or explanations; return ONLY the refined text."
)

FIELD_PROMPTS = {
    "title": (
        'Refine the following issue title to be professional, concise, and clear. Ensure perfect '
        'grammar and a formal tone. Title: "{content}". Just return the refined title, nothing else.'
    ),
    "description": (
        'Refine the following issue description to be professional, clear, and well-structured '
        'using markdown. Ensure excellent grammar, a professional tone, and make it easy to read '
        'for developers and stakeholders. Maintain all technical details. Content: "{content}". '
        'Just return the refined description, nothing else.'
    ),
    "stepsToReproduce": (
        'Refine the following steps to reproduce an issue into a clean, numbered list format '
        '(Step 1:, Step 2:, etc.). Use clear, imperative language (e.g., "Click", "Navigate to", '
        '"Observe"). Ensure the tone is professional and instructions are unambiguous. '
        'Content: "{content}". Just return the refined steps, nothing else.'
    ),
    "comment": (
        'Refine the following comment to be professional, constructive, and clear. Ensure it '
        'sounds like a helpful collaborator in a software project. Content: "{content}". '
        'Just return the refined comment, nothing else.'
    ),
    "milestone_title": (
        'Refine the following milestone title to be professional, outcome-oriented, and clear. '
        'Milestone Title: "{content}". Just return the refined title, nothing else.'
    ),
    "milestone_description": (
        'Refine the following milestone description to be professional, clear, and inspiring. '
        'Focus on the value and goals of the milestone. Content: "{content}". '
        'Just return the refined description, nothing else.'
    ),
    "checklist_notes": (
        'Refine the following task notes to be clear, professional, and grammatically correct. '
        'Use direct language. Content: "{content}". Just return the refined notes, nothing else.'
    ),
    "milestone_note": (
        'Refine the following milestone activity note to be professional, objective, and clear. '
        'Content: "{content}". Just return the refined note, nothing else.'
    ),
}

DEFAULT_PROMPT = (
    'Refine the following content to be professional, clear, and grammatically correct. Use a '
    'simple and direct tone. Content: "{content}". Just return the refined content, nothing else.'
)


def build_refine_prompt(
    content: str, field: str, mode: str, context: Optional[Dict[str, Any]] = None
) -> str:
    """
    Build the user prompt for a refinement request.

    In "suggest" mode the prompt is built from the non-empty context values
    instead of the content.
    """
    if mode == "suggest":
        context_lines = "\n".join(
            f"{key}: {value}" for key, value in (context or {}).items() if value
        )
        return (
            f"Based on the following context from an issue report:\n{context_lines}\n\n"
            f'Please suggest a professional, clear, and high-quality value for the field "{field}". '
            "Just return the suggested content, nothing else."
        )

    template = FIELD_PROMPTS.get(field, DEFAULT_PROMPT)
    return template.format(content=content)


async def refine_text(
    content: str, field: str, mode: str, context: Optional[Dict[str, Any]] = None
) -> str:
    """
    Ask the configured LLM to refine (or suggest) text.

    Raises:
        IntegrationNotConfigured: LOCAL_LLM_* variables are missing
        IntegrationError: upstream failure or empty reply
    """
    llm_url = os.getenv("LOCAL_LLM_URL")
    llm_model = os.getenv("LOCAL_LLM_MODEL")
    llm_key = os.getenv("LOCAL_LLM_CLIENT_KEY")
    if not llm_url or not llm_model or not llm_key:
        raise IntegrationNotConfigured("LLM configuration missing")

    prompt = build_refine_prompt(content, field, mode, context)
    logger.debug(f"Requesting {mode} for field '{field}' from {llm_model}")

    client = await get_client()
    try:
        response = await client.post(
            llm_url,
            headers={"Authorization": f"Bearer {llm_key}"},
            json={
                "model": llm_model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": 0.1,
            },
        )
    except httpx.RequestError as e:
        logger.error(f"LLM request failed: {e}")
        raise IntegrationError("Failed to refine content using AI") from e

    if response.status_code >= 400:
        logger.error(f"LLM API error {response.status_code}: {response.text[:500]}")
        raise IntegrationError("Failed to refine content using AI")

    try:
        choices = response.json().get("choices") or []
    except ValueError as e:
        raise IntegrationError("Invalid response from AI") from e

    refined = ""
    if choices:
        refined = ((choices[0].get("message") or {}).get("content") or "").strip()
    if not refined:
        raise IntegrationError("No content returned from AI")

    return refined
