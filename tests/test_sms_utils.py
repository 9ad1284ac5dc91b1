from utils.sms_utils import (
    calculate_sms,
    format_e164,
    is_valid_phone,
    matches_country_prefix,
    normalize_phone,
    render_template,
)


def test_short_gsm_message_is_one_segment():
    info = calculate_sms("Hello world")
    assert info["encoding"] == "GSM_7BIT"
    assert info["sms_count"] == 1
    assert info["character_count"] == 11
    assert info["remaining_chars"] == 149
    assert info["has_special_chars"] is False


def test_extended_characters_count_twice():
    info = calculate_sms("Price: 10€ [promo]")
    assert info["encoding"] == "GSM_7BIT"
    assert info["character_count"] == len("Price: 10€ [promo]") + 3
    assert info["special_chars_count"] == 3


def test_long_gsm_message_uses_concatenated_limit():
    info = calculate_sms("a" * 161)
    assert info["sms_count"] == 2
    assert info["characters_per_sms"] == 153
    assert info["remaining_chars"] == 153 * 2 - 161


def test_unicode_message_uses_ucs2_limits():
    info = calculate_sms("Привет")
    assert info["encoding"] == "UNICODE"
    assert info["characters_per_sms"] == 70

    long_info = calculate_sms("😀" * 71)
    assert long_info["sms_count"] == 2
    assert long_info["characters_per_sms"] == 67


def test_empty_message():
    info = calculate_sms("")
    assert info["sms_count"] == 0
    assert info["remaining_chars"] == 160


def test_phone_helpers():
    assert normalize_phone("+33 (6) 12-34-56-78") == "+33612345678"
    assert format_e164("33 6 12 34 56 78") == "+33612345678"
    assert format_e164("0033612345678") == "0033612345678"
    assert is_valid_phone("+33 6 12 34 56 78")
    assert not is_valid_phone("12345")
    assert not is_valid_phone("+0612345678")
    assert not is_valid_phone("")


def test_country_prefix_match_ignores_international_prefix():
    assert matches_country_prefix("+33612345678", "33")
    assert matches_country_prefix("0033612345678", "+33")
    assert not matches_country_prefix("+32470123456", "33")
    assert not matches_country_prefix("+33612345678", "")


def test_render_template():
    contact = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone_number": "+33612345678",
        "custom_fields": {"company": "Analytical", "customField1": "VIP"},
    }
    text = "Hi {{firstName}} ({{fullName}}) at {{company}} {{customField1}}{{customField2}} {{phoneNumber}}"
    assert render_template(text, contact) == "Hi Ada (Ada Lovelace) at Analytical VIP +33612345678"


def test_render_template_missing_values_are_empty():
    assert render_template("Hi {{firstName}}!", {}) == "Hi !"
