#!/usr/bin/env python3
"""
Scenario parameters and the per-call facts derived from them (callback number,
incident address).
"""

import random
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

AREA_CODES = ('555', '667', '301', '443', '410')

DEFAULT_ADDRESSES = (
    '125 Main Street',
    '847 Oak Avenue',
    '1542 Pine Road',
    '673 Maple Boulevard',
    '2158 Cedar Lane',
    '934 Elm Street',
    '421 Washington Avenue',
    '1789 Lincoln Drive',
    '356 Madison Street',
    '2047 Jefferson Road',
    '518 Park Avenue',
    '1223 High Street',
    '767 Broad Street',
    '1445 Center Avenue',
    '892 Church Street',
    '1657 School Road',
    '234 First Street',
    '345 Second Avenue',
    '456 Third Street',
    '567 Fourth Avenue',
)

# Checked in order; the first type with a matching keyword wins.
EMERGENCY_KEYWORDS = (
    ('medical', ('heart attack', 'chest pain', 'unconscious', 'breathing', 'medical',
                 'ambulance', 'hurt', 'injured', 'bleeding')),
    ('fire', ('fire', 'smoke', 'burning', 'flames', 'explosion')),
    ('crime', ('robbery', 'burglary', 'break', 'breaking in', 'intruder', 'assault',
               'fight', 'domestic', 'violence')),
    ('traffic', ('accident', 'crash', 'collision', 'highway', 'road', 'traffic', 'vehicle')),
)

TYPE_ADDRESSES = {
    'medical': ('1234 Residential Lane', '5678 Senior Living Drive', '9012 Family Court'),
    'fire': ('3456 Apartment Complex Way', '7890 Business District Street', '1357 Industrial Boulevard'),
    'traffic': ('Highway 71 and Main Street', 'Interstate 270 Mile Marker 15', 'Broad Street and High Street'),
    'crime': ('2468 Quiet Neighborhood Lane', '1357 Suburban Drive', '9876 Residential Court'),
}


class ScenarioParameters(BaseModel):
    """What the caller is calling about and how they behave on the line."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    scenario: str = Field(
        description="Emergency description the caller is living through"
    )

    cooperation_level: int = Field(
        default=50,
        description="0 = hysterical, 100 = calm and precise",
        ge=0,
        le=100
    )

    caller_instructions: str = Field(
        default="",
        description="Extra persona instructions (name, injuries, what to withhold)"
    )

    guidance_transcript: Optional[str] = Field(
        default=None,
        description="Real call transcript the conversation should follow"
    )

    address: Optional[str] = Field(
        default=None,
        description="Fixed incident address; chosen from the scenario when omitted"
    )

    city: str = Field(default="Columbus")
    state: str = Field(default="OH")

    volume: int = Field(
        default=80,
        description="Caller playback volume (0-100)",
        ge=0,
        le=100
    )

    @field_validator('scenario')
    @classmethod
    def validate_scenario(cls, v):
        if not v.strip():
            raise ValueError("scenario cannot be empty")
        return v.strip()

    @property
    def gain(self) -> float:
        """Linear playback gain; never fully muted."""
        return min(1.0, max(0.1, self.volume / 100))


def generate_callback_number(rng: Optional[random.Random] = None) -> str:
    """Fake callback number in AAA-EEE-NNNN form, generated once per call."""
    rng = rng or random
    area = rng.choice(AREA_CODES)
    exchange = rng.randint(200, 999)
    line = rng.randint(1000, 9999)
    return f"{area}-{exchange}-{line}"


def extract_emergency_type(text: str) -> str:
    """Classify a scenario description as medical, fire, crime, traffic or other."""
    lowered = text.lower()
    for kind, keywords in EMERGENCY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return 'other'


def candidate_addresses(emergency_type: str, rng: Optional[random.Random] = None) -> List[str]:
    """Addresses suited to the emergency type, followed by a couple of generic ones."""
    rng = rng or random
    specific = list(TYPE_ADDRESSES.get(emergency_type, ()))
    generic = rng.sample(DEFAULT_ADDRESSES, 2 if specific else 3)
    return specific + generic


def choose_address(scenario: ScenarioParameters, rng: Optional[random.Random] = None) -> str:
    """The one address the caller gives for the whole call."""
    if scenario.address:
        return scenario.address
    candidates = candidate_addresses(extract_emergency_type(scenario.scenario), rng)
    return candidates[0] if candidates else DEFAULT_ADDRESSES[0]
