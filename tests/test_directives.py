import pytest

from imagine.directives import (
    MAX_SEED,
    DirectiveDefaults,
    aspect_ratio_calculation,
    aspect_ratio_from_size,
    ceil8,
    extract_directives,
    parse_directives,
)
from imagine.errors import DirectiveError


def test_prompt_with_ratio_steps_and_seed():
    result = parse_directives("a cat --ar 16:9 --step 30 --seed 42 extra", DirectiveDefaults())
    assert result.sanitized_prompt == "a cat extra"
    assert (result.width, result.height) == (912, 512)
    assert result.steps == 30
    assert result.seed == 42
    assert result.enable_hr is False
    assert (result.hr_resize_x, result.hr_resize_y) == (912, 512)


def test_extract_keeps_last_value_and_lowercases_keys():
    params, sanitized = extract_directives("dog --Seed 1 --seed 2 --fast in   the park")
    assert params == {"seed": "2", "fast": "in"}
    assert sanitized == "dog the park"


def test_hyphenated_words_are_not_directives():
    params, sanitized = extract_directives("a well-known castle")
    assert params == {}
    assert sanitized == "a well-known castle"


def test_em_dash_is_treated_as_double_dash():
    result = parse_directives("a cat —ar 2:1", DirectiveDefaults())
    assert result.sanitized_prompt == "a cat"
    assert (result.width, result.height) == (1024, 512)


def test_job_aspect_ratio_wins_over_directive():
    result = parse_directives("castle --ar 16:9", DirectiveDefaults(), aspect_ratio="3:2")
    assert (result.width, result.height) == (768, 512)


def test_square_job_aspect_ratio_defers_to_directive():
    result = parse_directives("castle --ar 1:2", DirectiveDefaults(), aspect_ratio="1:1")
    assert (result.width, result.height) == (512, 1024)


def test_zoom_enables_hires():
    result = parse_directives("castle --zoom 2", DirectiveDefaults())
    assert result.enable_hr is True
    assert result.hr_scale == 2.0
    assert (result.hr_resize_x, result.hr_resize_y) == (1024, 1024)


def test_zoom_out_of_range_falls_back_to_default_scale():
    result = parse_directives("castle --zoom 9", DirectiveDefaults(hr_scale=1.5))
    assert result.enable_hr is True
    assert result.hr_scale == 1.5
    assert result.hr_resize_x == 768


def test_hires_without_scale_is_disabled():
    result = parse_directives("castle", DirectiveDefaults(enable_hr=True, hr_scale=1.0))
    assert result.enable_hr is False
    assert result.hr_resize_x == 512


def test_out_of_range_values_fall_back_to_defaults():
    result = parse_directives("castle --step 0 --cfgscale 50", DirectiveDefaults(steps=25, cfg_scale=6.5))
    assert result.steps == 25
    assert result.cfg_scale == 6.5


def test_seed_defaults_and_clamping():
    assert parse_directives("x", DirectiveDefaults(seed=0)).seed == -1
    assert parse_directives("x", DirectiveDefaults(seed=77)).seed == 77
    assert parse_directives("x --seed -5", DirectiveDefaults()).seed == -1
    assert parse_directives("x --seed 99999999999999999999", DirectiveDefaults()).seed == MAX_SEED


@pytest.mark.parametrize("prompt", ["x --step abc", "x --ar 16x9", "x --ar 0:1", "x --cfgscale high"])
def test_malformed_values_raise(prompt):
    with pytest.raises(DirectiveError):
        parse_directives(prompt, DirectiveDefaults())


def test_ceil8():
    assert ceil8(1) == 8
    assert ceil8(8) == 8
    assert ceil8(910) == 912
    with pytest.raises(ValueError):
        ceil8(0)


def test_aspect_ratio_helpers():
    assert aspect_ratio_calculation("2:3", 512, 512) == (512, 768)
    assert aspect_ratio_calculation("1:1", 640, 512) == (640, 512)
    assert aspect_ratio_from_size(768, 512) == "3:2"
    with pytest.raises(ValueError):
        aspect_ratio_from_size(0, 512)


RATIOS = ["16:9", "9:16", "3:2", "2:3", "4:3", "3:4", "21:9", "7:5", "1:3", "5:4"]


@pytest.mark.parametrize("ratio", RATIOS)
@pytest.mark.parametrize("base", [512, 640, 768, 1024])
def test_ratio_scales_larger_side_to_multiple_of_8(ratio, base):
    w_ratio, h_ratio = (int(part) for part in ratio.split(":"))
    result = parse_directives(f"x --ar {ratio}", DirectiveDefaults(width=base, height=base))
    scaled, kept = (result.width, result.height) if w_ratio > h_ratio else (result.height, result.width)
    exact = base * max(w_ratio, h_ratio) / min(w_ratio, h_ratio)
    assert kept == base
    assert scaled % 8 == 0
    assert scaled >= base
    assert exact - 1 < scaled < exact + 8


@pytest.mark.parametrize("ratio", RATIOS)
@pytest.mark.parametrize("width, height", [(640, 512), (512, 768), (1024, 576)])
def test_ratio_from_rectangular_base_keeps_the_shorter_ratio_side(ratio, width, height):
    w_ratio, h_ratio = (int(part) for part in ratio.split(":"))
    new_width, new_height = aspect_ratio_calculation(ratio, width, height)
    if w_ratio > h_ratio:
        assert new_height == height
        assert new_width % 8 == 0 and new_width >= height
    else:
        assert new_width == width
        assert new_height % 8 == 0 and new_height >= width


def test_cfg_scale_below_range_falls_back_to_default():
    result = parse_directives("castle --cfgscale 0.5", DirectiveDefaults(cfg_scale=6.5))
    assert result.cfg_scale == 6.5
