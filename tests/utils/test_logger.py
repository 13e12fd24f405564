from newsdesk.utils.logger import (
    MASK,
    add_client_context,
    get_logger,
    mask_sensitive_fields,
)


def test_masks_credential_fields():
    event = mask_sensitive_fields(
        None,
        "info",
        {"event": "login", "password": "hunter2", "Authorization": "Bearer abc", "user": "ed"},
    )
    assert event["password"] == MASK
    assert event["Authorization"] == MASK
    assert event["user"] == "ed"


def test_masks_one_level_into_dicts():
    event = mask_sensitive_fields(
        None, "info", {"event": "x", "headers": {"cookie": "_csrf=abc", "accept": "*/*"}}
    )
    assert event["headers"] == {"cookie": MASK, "accept": "*/*"}


def test_client_context_omits_unknown_user():
    assert add_client_context("10.0.0.1") == {"client_ip": "10.0.0.1"}
    assert add_client_context("10.0.0.1", "ed-7")["user_id"] == "ed-7"


def test_get_logger_returns_bound_logger():
    log = get_logger("newsdesk.test")
    assert hasattr(log, "info")
