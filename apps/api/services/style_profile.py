"""Style presets, effect presets and the prompts built from them."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

DEFAULT_STYLE = "magazine"
QUALITY_KEYWORDS = "8K, high resolution, professional photography, premium quality, sharp details"
TEXT_TO_IMAGE_SUFFIX = "high quality photography, professional editing, magazine style"


@dataclass(frozen=True)
class StylePreset:
    id: str
    name: str
    prompt: str
    negative_prompt: str


STYLE_PRESETS: Dict[str, StylePreset] = {
    "magazine": StylePreset(
        id="magazine",
        name="Magazine",
        prompt=(
            "Vogue magazine editorial style, luxury fashion aesthetic, warm golden lighting, "
            "sophisticated and elegant, professional model photography, high-end beauty editorial, "
            "warm beige and champagne tones, cinematic background, soft studio lighting, "
            "premium quality, editorial composition"
        ),
        negative_prompt="amateur, low quality, blurry, distorted, ugly, bad anatomy, bad proportions, watermark, signature",
    ),
    "soft": StylePreset(
        id="soft",
        name="Soft",
        prompt=(
            "Japanese lifestyle magazine style, soft natural lighting, muted pastel colors, "
            "Kinfolk aesthetic, dreamy atmosphere, gentle and warm, artistic and refined, "
            "low saturation, earthy tones, natural and authentic, editorial quality"
        ),
        negative_prompt="harsh lighting, high contrast, neon colors, artificial, flashy, bold, aggressive",
    ),
    "urban": StylePreset(
        id="urban",
        name="Urban",
        prompt=(
            "Apple keynote style, clean professional background, cool blue-gray tones, "
            "corporate executive aesthetic, modern minimalist, trustworthy and authoritative, "
            "soft diffused lighting, sharp details, premium corporate style"
        ),
        negative_prompt="casual, messy, warm tones, rustic, vintage, playful, informal, cluttered",
    ),
    "vintage": StylePreset(
        id="vintage",
        name="Vintage",
        prompt=(
            "Kodak Portra 400 film look, vintage aesthetic, warm film grain, cinematic color grading, "
            "nostalgic atmosphere, retro style, artistic, soft highlights, subtle vignette, "
            "analog photography feel"
        ),
        negative_prompt="digital, sharp, clean, modern, sterile, oversaturated, HDR, artificial lighting",
    ),
}

# Effect id -> preset style it renders with.
EFFECT_PRESETS: Dict[str, str] = {
    "outfit-magazine": "magazine",
    "outfit-soft": "soft",
    "outfit-korean-premium": "soft",
    "outfit-vintage": "vintage",
    "outfit-urban": "urban",
    "outfit-street-cool": "urban",
    "outfit-minimal-clean": "urban",
    "outfit-warm-cozy": "soft",
    "beauty-magazine": "magazine",
    "beauty-soft-glow": "soft",
    "cafe-soft": "soft",
    "cafe-urban": "urban",
    "cafe-vintage": "vintage",
    "travel-soft": "soft",
    "travel-vintage": "vintage",
    "food-soft": "soft",
    "food-magazine": "magazine",
}

_EFFECT_STYLE_SUFFIX = re.compile(r"-(magazine|soft|urban|vintage)$")

_COLOR_TONES = [
    "warm golden tones",
    "cool blue tones",
    "soft pastel tones",
    "rich brown tones",
    "neutral gray tones",
]
_LIGHTINGS = [
    "soft diffused lighting",
    "dramatic side lighting",
    "natural window light",
    "warm golden hour light",
    "studio softbox lighting",
]
_MOODS = [
    "elegant and sophisticated",
    "warm and inviting",
    "clean and minimal",
    "artistic and creative",
    "professional and polished",
]
_TEXTURES = [
    "smooth and refined",
    "grainy film texture",
    "soft matte finish",
    "glossy and polished",
    "natural organic feel",
]


@dataclass(frozen=True)
class StyleProfile:
    id: str
    source: str
    prompt: str
    features: Dict[str, str] = field(default_factory=dict)
    preset_style: Optional[str] = None
    reference_url: Optional[str] = None


def is_known_effect(effect_id: str) -> bool:
    return effect_id in EFFECT_PRESETS


def resolve_preset_style(effect_id: Optional[str] = None, preset_style: Optional[str] = None) -> str:
    """Pick the preset a job renders with; effect ids win over legacy preset names."""
    if effect_id and effect_id in EFFECT_PRESETS:
        match = _EFFECT_STYLE_SUFFIX.search(effect_id)
        return match.group(1) if match else EFFECT_PRESETS[effect_id]
    if preset_style in STYLE_PRESETS:
        return preset_style
    return DEFAULT_STYLE


def intensity_modifier(intensity: int) -> str:
    if intensity < 50:
        return "subtle, gentle "
    if intensity > 80:
        return "strong, pronounced "
    return ""


def profile_from_preset(style: str) -> StyleProfile:
    preset = STYLE_PRESETS.get(style) or STYLE_PRESETS[DEFAULT_STYLE]
    lowered = preset.prompt.lower()
    color_tone = "balanced tones"
    if "warm" in lowered or "golden" in lowered:
        color_tone = "warm golden tones"
    elif "cool" in lowered or "blue" in lowered:
        color_tone = "cool blue tones"
    elif "muted" in lowered or "pastel" in lowered:
        color_tone = "soft pastel tones"
    lighting = "professional lighting"
    if "soft" in lowered or "diffused" in lowered:
        lighting = "soft diffused lighting"
    elif "natural" in lowered:
        lighting = "natural lighting"
    return StyleProfile(
        id=f"style_preset_{preset.id}",
        source="preset",
        prompt=preset.prompt,
        features={
            "color_tone": color_tone,
            "lighting": lighting,
            "mood": "refined and elegant",
            "texture": "high quality finish",
        },
        preset_style=preset.id,
    )


def profile_from_reference(reference_url: str) -> StyleProfile:
    """Derive stable style features from a reference image URL."""
    seed = int.from_bytes(hashlib.sha256(reference_url.encode("utf-8")).digest()[:8], "big")
    features = {
        "color_tone": _COLOR_TONES[seed % len(_COLOR_TONES)],
        "lighting": _LIGHTINGS[(seed >> 4) % len(_LIGHTINGS)],
        "mood": _MOODS[(seed >> 8) % len(_MOODS)],
        "texture": _TEXTURES[(seed >> 12) % len(_TEXTURES)],
    }
    prompt = (
        f"Premium photography style, {features['color_tone']}, {features['lighting']}, "
        f"{features['mood']}, {features['texture']}, high quality, professional, "
        "magazine editorial aesthetic, refined composition"
    )
    return StyleProfile(
        id=f"style_ref_{seed:016x}",
        source="reference",
        prompt=prompt,
        features=features,
        reference_url=reference_url,
    )


def resolve_style_profile(
    *,
    style_source: str,
    preset_style: Optional[str] = None,
    reference_url: Optional[str] = None,
    effect_id: Optional[str] = None,
    effect_intensity: int = 100,
) -> StyleProfile:
    if style_source == "reference" and reference_url:
        return profile_from_reference(reference_url)
    profile = profile_from_preset(resolve_preset_style(effect_id, preset_style))
    modifier = intensity_modifier(effect_intensity) if effect_id else ""
    if not modifier:
        return profile
    return StyleProfile(
        id=profile.id,
        source=profile.source,
        prompt=f"{modifier}{profile.prompt}",
        features=profile.features,
        preset_style=profile.preset_style,
    )


def build_enhance_prompt(profile: StyleProfile, *, media_type: str = "image", keywords: Optional[List[str]] = None) -> str:
    parts = [profile.prompt]
    if media_type == "video":
        parts.append("suitable for video background, consistent style across frames")
    parts.append(QUALITY_KEYWORDS)
    if keywords:
        parts.append(", ".join(keywords))
    return ", ".join(part for part in parts if part)


def build_video_background_prompt(profile: StyleProfile) -> str:
    return build_enhance_prompt(
        profile,
        media_type="video",
        keywords=["video background", "9:16 vertical format", "no text", "no people", "abstract or scenic"],
    )
