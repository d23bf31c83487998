from services.style_profile import (
    QUALITY_KEYWORDS,
    build_enhance_prompt,
    build_video_background_prompt,
    profile_from_reference,
    resolve_preset_style,
    resolve_style_profile,
)


def test_effect_suffix_selects_preset():
    assert resolve_preset_style("cafe-urban") == "urban"
    assert resolve_preset_style("outfit-korean-premium") == "soft"
    assert resolve_preset_style(None, "vintage") == "vintage"
    assert resolve_preset_style("unknown-effect", "nope") == "magazine"


def test_intensity_adjusts_prompt():
    subtle = resolve_style_profile(style_source="preset", effect_id="food-soft", effect_intensity=30)
    plain = resolve_style_profile(style_source="preset", effect_id="food-soft", effect_intensity=70)
    strong = resolve_style_profile(style_source="preset", effect_id="food-soft", effect_intensity=90)

    assert subtle.prompt.startswith("subtle, gentle ")
    assert plain.prompt.startswith("Japanese lifestyle")
    assert strong.prompt.startswith("strong, pronounced ")


def test_reference_profile_is_stable_per_url():
    first = profile_from_reference("https://cdn.test/ref.jpg")
    second = profile_from_reference("https://cdn.test/ref.jpg")

    assert first == second
    assert first.source == "reference"
    assert set(first.features) == {"color_tone", "lighting", "mood", "texture"}


def test_prompts_carry_quality_keywords():
    profile = resolve_style_profile(style_source="preset", preset_style="magazine")

    image_prompt = build_enhance_prompt(profile)
    video_prompt = build_video_background_prompt(profile)

    assert QUALITY_KEYWORDS in image_prompt
    assert "consistent style across frames" not in image_prompt
    assert "consistent style across frames" in video_prompt
    assert "no text" in video_prompt
