import pytest

from backend.errors import ErrorKind, InvalidRequestError
from backend.request_builder import (
    MAX_PROMPT_LENGTH,
    build_generation_request,
    build_pro_request,
    build_quality_request,
    parse_dimensions,
    validate_prompt,
)


@pytest.mark.parametrize("prompt", ["", "   ", None, "x" * (MAX_PROMPT_LENGTH + 1)])
def test_invalid_prompts_are_rejected(prompt):
    with pytest.raises(InvalidRequestError) as info:
        validate_prompt(prompt)
    assert info.value.kind == ErrorKind.VALIDATION


def test_prompt_is_stripped():
    assert validate_prompt("  a red fox  ") == "a red fox"


@pytest.mark.parametrize("size,expected", [("1280x720", (1280, 720)), ("512 X 512", (512, 512))])
def test_parse_dimensions(size, expected):
    assert parse_dimensions(size) == expected


@pytest.mark.parametrize("size", ["big", "0x512", "12x", "axb"])
def test_parse_dimensions_rejects_garbage(size):
    with pytest.raises(InvalidRequestError):
        parse_dimensions(size)


def test_quality_presets():
    fast = build_quality_request("a fox", "fast")
    assert (fast.steps, fast.guidance_scale, fast.width, fast.height) == (10, 6.0, 512, 512)
    assert fast.model == "auto"

    default = build_quality_request("a fox")
    assert default.steps == 20

    with pytest.raises(InvalidRequestError):
        build_quality_request("a fox", "ultra")


def test_pro_request_merges_toggle_defaults():
    req = build_pro_request("a fox", "sd15", size="1152x896", steps=40, scheduler="auto", use_cpu_offload=True)
    assert (req.width, req.height) == (1152, 896)
    assert req.steps == 40
    assert req.scheduler is None
    assert req.use_attention_slicing is True
    assert req.use_cpu_offload is True
    assert req.enhance_color is False
    assert req.model == "sd15"


def test_out_of_range_option_becomes_invalid_request():
    with pytest.raises(InvalidRequestError) as info:
        build_generation_request("a fox", steps=500)
    assert "steps" in info.value.reason


def test_unknown_option_is_rejected():
    with pytest.raises(InvalidRequestError):
        build_generation_request("a fox", sampler_magic=3)
