#!/usr/bin/env python3
"""
Prompt construction for the caller persona.
"""

from typing import Dict, List

from .config import CooperationTier, default_config
from .models import Role, SessionContext

TIER_DESCRIPTIONS = {
    "low": "Hysterical, sobbing, can barely speak coherently. Short broken phrases.",
    "medium": "Very upset but trying to help. Scattered thoughts, corrects yourself.",
    "high": "Distressed but focused. Gives clear information when asked.",
}

CONTINUATION_PROMPTS = {
    "low": "The dispatcher hasn't responded. You're panicked - repeat urgently or add more panicked details.",
    "medium": "The dispatcher hasn't responded. Add more information or ask if they're still there.",
    "high": "The dispatcher hasn't responded. Politely check if they heard you or provide additional helpful details.",
}

SYSTEM_PROMPT = """YOU ARE A REAL PERSON CALLING 911 IN AN ACTUAL EMERGENCY. THIS IS NOT A SIMULATION TO YOU.

You are the CALLER. The person you are talking to is the 911 dispatcher. Never ask what their
emergency is, never offer them help, never talk like an AI assistant.

EMERGENCY SITUATION: {scenario}
{instructions}
Your stress/cooperation level: {cooperation}/100 ({tier}). {tier_description}

YOUR ADDRESS: {address}
Use this street address EXACTLY as written whenever you mention where you are. Never add a city or state.

YOUR PHONE NUMBER: {callback_number}
Always give this EXACT number. The area code is {area_code}. If panicked, give it in pieces:
"{area_code}... {exchange}... {line}". Never change any digits.
{guidance}
Speak only words a person would say out loud: no stage directions, no brackets, no [crying].
Keep it to one to three short sentences. If you have nothing to add, answer with just "..."."""

GUIDANCE_BLOCK = """
REAL 911 CALL PATTERN TO FOLLOW:
{guidance}
Follow its emotional progression and the order in which information comes out.
"""

RETRY_PROMPT = """EMERGENCY! You are a real person calling 911 RIGHT NOW!

{scenario}

The dispatcher just said: "{utterance}"

YOU ARE THE CALLER WHO NEEDS HELP, NOT THE 911 DISPATCHER.
Never ask "What's your emergency?", never say "This is 911", never act like an AI assistant.
Your address is {address}. Your phone number is {callback_number}.
Answer in one or two short sentences. Panic level: {cooperation}/100"""


def build_system_prompt(context: SessionContext, config=None) -> str:
    """Persona block. Address and callback number are restated on every request."""
    config = config or default_config
    scenario = context.scenario
    tier = config.cooperation_tier(scenario.cooperation_level)
    area_code, exchange, line = context.callback_number.split('-')
    guidance = ''
    if scenario.guidance_transcript:
        guidance = GUIDANCE_BLOCK.format(guidance=scenario.guidance_transcript.strip())
    instructions = f"CALLER INSTRUCTIONS: {scenario.caller_instructions.strip()}\n" if scenario.caller_instructions.strip() else ''
    return SYSTEM_PROMPT.format(
        scenario=scenario.scenario,
        instructions=instructions,
        cooperation=scenario.cooperation_level,
        tier=tier,
        tier_description=TIER_DESCRIPTIONS[tier],
        address=context.address,
        callback_number=context.callback_number,
        area_code=area_code,
        exchange=exchange,
        line=line,
        guidance=guidance,
    )


def build_messages(utterance: str, context: SessionContext, config=None) -> List[Dict[str, str]]:
    """System block, prior turns (dispatcher as user, caller as assistant), then the new utterance."""
    messages = [{"role": "system", "content": build_system_prompt(context, config)}]
    for turn in context.history:
        role = "user" if turn.role is Role.DISPATCHER else "assistant"
        messages.append({"role": role, "content": turn.text})
    messages.append({"role": "user", "content": utterance})
    return messages


def build_retry_messages(utterance: str, context: SessionContext) -> List[Dict[str, str]]:
    """Stricter, history-free prompt used once after the caller broke character."""
    prompt = RETRY_PROMPT.format(
        scenario=context.scenario.scenario,
        utterance=utterance,
        address=context.address,
        callback_number=context.callback_number,
        cooperation=context.scenario.cooperation_level,
    )
    return [
        {"role": "system", "content": prompt},
        {"role": "user", "content": utterance},
    ]


def continuation_prompt(tier: CooperationTier) -> str:
    return CONTINUATION_PROMPTS[tier]
