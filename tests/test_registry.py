import pytest
from pydantic import ValidationError

from whatsappier.automations.models import ActionKind, Platform, TriggerKind
from whatsappier.automations.registry import (
    LF_ORDER_TO_WHATSAPP,
    AutomationTemplateDefinition,
    GsheetsOrderSyncConfig,
    get_template_definition,
    list_template_definitions,
    register_template,
)


def test_catalog_contains_builtin_templates():
    ids = [d.id for d in list_template_definitions()]
    assert ids == [
        "lf-order-to-whatsapp",
        "lf-abandoned-checkout-recovery",
        "lf-otp-verification",
        "gsheets-order-sync",
    ]


def test_lookup_unknown_template_raises_key_error():
    with pytest.raises(KeyError):
        get_template_definition("does-not-exist")


def test_duplicate_registration_is_rejected():
    with pytest.raises(ValueError):
        register_template(LF_ORDER_TO_WHATSAPP)


def test_definitions_are_immutable():
    definition = get_template_definition("lf-order-to-whatsapp")
    with pytest.raises(AttributeError):
        definition.name = "changed"  # type: ignore[misc]
    with pytest.raises(TypeError):
        definition.default_config["require_confirmation"] = False  # type: ignore[index]


def test_order_template_shape():
    definition = get_template_definition("lf-order-to-whatsapp")
    assert definition.trigger.kind is TriggerKind.ORDER_CONFIRMED
    assert definition.trigger.platform is Platform.LIGHTFUNNELS
    assert definition.action.kind is ActionKind.SEND_WHATSAPP_MESSAGE
    assert definition.awaits_reply
    assert definition.reply_handler == "order_confirmation"


def test_validate_config_merges_defaults_and_accepts_camel_case():
    definition = get_template_definition("lf-order-to-whatsapp")
    config = definition.validate_config(
        {
            "lightfunnelsConnectionId": "c1",
            "whatsappDeviceId": "d1",
            "messageTemplateId": "t1",
            "confirmationWindowHours": 24,
        }
    )
    assert config.lightfunnels_connection_id == "c1"
    assert config.require_confirmation is True
    assert config.confirmation_window_hours == 24


def test_camel_case_value_overrides_snake_case_default():
    definition = get_template_definition("lf-abandoned-checkout-recovery")
    config = definition.validate_config(
        {
            "lightfunnels_connection_id": "c1",
            "whatsapp_device_id": "d1",
            "message_template_id": "t1",
            "delayMinutes": 45,
        }
    )
    assert config.delay_minutes == 45


@pytest.mark.parametrize("delay", [1, 4, 1441])
def test_recovery_delay_bounds(delay):
    definition = get_template_definition("lf-abandoned-checkout-recovery")
    with pytest.raises(ValidationError):
        definition.validate_config(
            {
                "lightfunnels_connection_id": "c1",
                "whatsapp_device_id": "d1",
                "message_template_id": "t1",
                "delay_minutes": delay,
            }
        )


def test_missing_required_field_fails_validation():
    definition = get_template_definition("lf-otp-verification")
    with pytest.raises(ValidationError):
        definition.validate_config({})
    config = definition.validate_config({"whatsapp_device_id": "d1"})
    assert config.otp_length == 6
    assert "{{otp}}" in config.message_template


def test_sheet_sync_default_columns():
    config = GsheetsOrderSyncConfig(
        lightfunnels_connection_id="c1",
        google_sheets_connection_id="c2",
        google_sheet_id="s1",
    )
    enabled = [c.field for c in config.sheet_columns if c.enabled]
    assert enabled[:2] == ["date", "order_number"]
    assert "order_id" not in enabled
    assert config.worksheet_name == "Sheet1"


def test_custom_definition_summary():
    definition = get_template_definition("gsheets-order-sync")
    summary = definition.summary()
    assert summary["trigger"] == {
        "kind": "lightfunnels_order_confirmed",
        "platform": "LIGHTFUNNELS",
    }
    assert summary["requirements"]["connections"] == ["LIGHTFUNNELS", "GOOGLE_SHEETS"]
    assert isinstance(definition, AutomationTemplateDefinition)
