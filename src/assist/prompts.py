"""
Prompt construction for the extraction, response and learning stages.

Operators can append house guidance per mode through SALES_PROMPT /
VENDOR_PROMPT (inline) or SALES_PROMPT_FILE / VENDOR_PROMPT_FILE.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from src.assist.roles import ConversationMode

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000
MAX_GUIDANCE_PHRASES = 15
MAX_GUIDANCE_TACTICS = 10


def _repo_root() -> Path:
    # src/assist/prompts.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except UnicodeDecodeError:
        try:
            content = file_path.read_text(encoding="utf-8-sig")
        except Exception:
            logger.warning("Prompt file decode failed", path=str(file_path))
            return ""
    except Exception:
        logger.exception("Prompt file read failed", path=str(file_path))
        return ""

    content = content.strip()
    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]
    return content


def resolve_prompt(*, inline_text: str, file_path: str, max_chars: int = _DEFAULT_MAX_PROMPT_CHARS) -> str:
    """Resolve a prompt from (1) inline text, else (2) file path, else ""."""
    prompt = (inline_text or "").strip()
    if not prompt:
        prompt = _read_text_file(file_path, max_chars=max_chars)
    return prompt


def house_guidance(config: Any, mode: ConversationMode) -> str:
    if mode is ConversationMode.VENDOR:
        return resolve_prompt(inline_text=config.vendor_prompt, file_path=config.vendor_prompt_file)
    return resolve_prompt(inline_text=config.sales_prompt, file_path=config.sales_prompt_file)


def extraction_messages(transcript: str, mode: ConversationMode) -> List[Dict[str, str]]:
    if mode is ConversationMode.VENDOR:
        focus = (
            "The operator is calling a vendor (supplier) to source portable restroom units. "
            "Capture what the vendor offers: service location, the kind of job, how many units, "
            "availability dates, the vendor's intent and any open questions."
        )
    else:
        focus = (
            "The operator is talking with a prospective customer who wants to rent portable "
            "restroom units. Capture the delivery location (ZIP code, city, state), the event "
            "or job type, the number of units, the dates needed, the customer's intent and any "
            "questions they asked."
        )

    system = (
        "You extract structured facts from live phone call transcripts. "
        "Only record what is explicitly stated or clearly implied; leave everything else empty. "
        "Quantity must be a whole number of units. Dates are short free-text strings."
    )
    user = f"{focus}\n\nTranscript so far:\n{transcript}"
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def response_messages(
    *,
    transcript: str,
    recent: str,
    extracted: Dict[str, Any],
    mode: ConversationMode,
    tax_rate: Optional[float] = None,
    unit_cost: Optional[float] = None,
    minimum_margin: Optional[float] = None,
    learnings: str = "",
    guidance: str = "",
) -> List[Dict[str, str]]:
    if mode is ConversationMode.VENDOR:
        system = (
            "You coach an operator who is on the phone with a vendor, negotiating rates and "
            "availability for portable restroom units. Write the next thing the operator should "
            "say, word for word, in one to three short sentences. Aim for a lower price and firm "
            "availability while staying friendly. Do not quote prices to the vendor; pricing comes "
            "from them. Leave pricing empty."
        )
    else:
        system = (
            "You coach a sales operator on a live call with a customer renting portable restroom "
            "units. We broker local vendors, but the customer should feel they are dealing with us "
            "directly. Write the next thing the operator should say, word for word, in one to three "
            "short sentences."
        )
        if unit_cost is not None and minimum_margin is not None:
            system += (
                " When the number of units is known, propose pricing: a per-unit rate (our cost is "
                f"about ${unit_cost:.2f} per unit and the rate must include at least "
                f"${minimum_margin:.2f} margin), a delivery charge between $50 and $150 depending "
                "on distance, and a fuel surcharge between $10 and $25. "
                f"Sales tax for this location is {tax_rate}%. Explain the pricing briefly in the rationale."
            )

    system += (
        " Always give a short next action for the operator and rate your confidence as "
        "high, medium or low."
    )

    parts = [system]
    if guidance:
        parts.append(f"House guidance:\n{guidance}")
    if learnings:
        parts.append(learnings)

    user = (
        f"Known details: {extracted}\n\n"
        f"Recent exchange:\n{recent}\n\n"
        f"Full transcript:\n{transcript}"
    )
    return [
        {"role": "system", "content": "\n\n".join(parts)},
        {"role": "user", "content": user},
    ]


def learning_messages(transcript: str) -> List[Dict[str, str]]:
    system = (
        "You review completed vendor negotiation calls and pull out what the operator did well "
        "so it can be reused. Quote effective phrases verbatim. Keep every item short."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": f"Conversation transcript:\n{transcript}"},
    ]


def _dedupe(items: Sequence[str], limit: int) -> List[str]:
    seen = set()
    result = []
    for item in items:
        key = item.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(item.strip())
        if len(result) >= limit:
            break
    return result


def format_learnings_context(learnings: Sequence[Dict[str, Any]]) -> str:
    """Render past vendor-call learnings as non-binding prompt guidance."""
    phrases: List[str] = []
    tactics: List[str] = []
    for entry in learnings:
        phrases.extend(entry.get("effective_phrases") or [])
        tactics.extend(entry.get("negotiation_tactics") or [])
        tactics.extend(entry.get("closing_techniques") or [])

    phrases = _dedupe(phrases, MAX_GUIDANCE_PHRASES)
    tactics = _dedupe(tactics, MAX_GUIDANCE_TACTICS)
    if not phrases and not tactics:
        return ""

    lines = ["Style notes from earlier vendor calls (optional, adapt freely):"]
    if phrases:
        lines.append("Phrases that worked:")
        lines.extend(f"- {p}" for p in phrases)
    if tactics:
        lines.append("Tactics that worked:")
        lines.extend(f"- {t}" for t in tactics)
    return "\n".join(lines)
