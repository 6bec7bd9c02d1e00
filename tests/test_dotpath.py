import json

import pytest

from modelpuller.dotpath import DotpathError, apply_parameter_overrides


SUCCESS_CASES = {
    "change_value": (
        '{"key": "value", "another_key": "another value"}',
        {"key": "simple"},
        '{"key": "simple", "another_key": "another value"}',
    ),
    "create_field": (
        "{}",
        {"key": "create_me"},
        '{"key": "create_me"}',
    ),
    "create_nested_object": (
        '{"key": "value"}',
        {
            "nested.object.key": "nested value",
            "nested.object.another": "another one",
        },
        '{"key": "value", "nested":{"object":{"key": "nested value", "another": "another one"}}}',
    ),
    "create_field_in_nested_object": (
        '{"struct": {"param": "param_value"}}',
        {"struct.key": "create_me"},
        '{"struct": {"key": "create_me", "param": "param_value"}}',
    ),
}

ERROR_CASES = {
    "error_no_overwrite_object": (
        '{"struct": {"key": "value"}}',
        {"struct": "new_value"},
    ),
    "error_no_overwrite_array": (
        '{"array": ["key"], "some_other_key": "value"}',
        {"array.key": "value"},
    ),
}


@pytest.mark.parametrize(
    "source,overrides,want", SUCCESS_CASES.values(), ids=list(SUCCESS_CASES)
)
def test_dotpath_success(source, overrides, want):
    obj = json.loads(source)
    apply_parameter_overrides(obj, overrides)
    assert obj == json.loads(want)


@pytest.mark.parametrize("source,overrides", ERROR_CASES.values(), ids=list(ERROR_CASES))
def test_dotpath_errors(source, overrides):
    obj = json.loads(source)
    with pytest.raises(DotpathError):
        apply_parameter_overrides(obj, overrides)


def test_none_params_is_error():
    with pytest.raises(DotpathError):
        apply_parameter_overrides(None, {"key": "value"})


def test_no_overrides_leaves_params_unchanged():
    obj = {"key": "value"}
    apply_parameter_overrides(obj, {})
    assert obj == {"key": "value"}


def test_overwriting_null_is_error():
    obj = {"key": None}
    with pytest.raises(DotpathError):
        apply_parameter_overrides(obj, {"key": "value"})