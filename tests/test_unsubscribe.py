# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for signed unsubscribe tokens and the email footer."""

from campaign_mailer.unsubscribe import (
    EXPIRED,
    INVALID_FORMAT,
    INVALID_SIGNATURE,
    INVALID_TOKEN,
    TOKEN_TTL,
    UnsubscribeLinks,
    _sign,
    generate_token,
    inject_footer,
    unsubscribe_footer,
    verify_token,
)

from conftest import NOW

SECRET = "test-secret"


def test_round_trip_payload():
    token = generate_token(SECRET, 7, "acme", "ann@example.com", NOW)
    check = verify_token(SECRET, token, NOW + 60)

    assert check.valid
    assert check.payload == {
        "contact_id": 7,
        "tenant_id": "acme",
        "email": "ann@example.com",
        "expires_at": NOW + TOKEN_TTL,
    }


def test_token_has_no_padding():
    token = generate_token(SECRET, 7, "acme", "ann@example.com", NOW)
    assert "=" not in token
    assert token.count(".") == 1


def test_expired_token():
    token = generate_token(SECRET, 7, "acme", "ann@example.com", NOW)
    check = verify_token(SECRET, token, NOW + TOKEN_TTL + 1)

    assert not check.valid
    assert check.error == EXPIRED
    assert check.payload["contact_id"] == 7


def test_wrong_secret():
    token = generate_token(SECRET, 7, "acme", "ann@example.com", NOW)
    assert verify_token("other", token, NOW).error == INVALID_SIGNATURE


def test_tampered_payload():
    token = generate_token(SECRET, 7, "acme", "ann@example.com", NOW)
    forged = generate_token(SECRET, 8, "acme", "bob@example.com", NOW)
    mixed = forged.split(".")[0] + "." + token.split(".")[1]
    assert verify_token(SECRET, mixed, NOW).error == INVALID_SIGNATURE


def test_malformed_tokens():
    assert verify_token(SECRET, "", NOW).error == INVALID_FORMAT
    assert verify_token(SECRET, "a.b.c", NOW).error == INVALID_FORMAT
    assert verify_token(SECRET, "ü.x", NOW).error == INVALID_TOKEN


def test_signed_garbage_payload():
    links = UnsubscribeLinks(SECRET, "https://x.test")
    payload_part = "bm90LWpzb24"  # "not-json"
    token = f"{payload_part}.{_sign(SECRET, payload_part)}"
    assert links.verify(token, NOW).error == INVALID_TOKEN


def test_url_and_footer():
    links = UnsubscribeLinks(SECRET, "https://news.acme.test/")
    url = links.url_for(7, "acme", "ann@example.com", NOW)

    assert url.startswith("https://news.acme.test/unsubscribe?token=")
    token = url.split("token=", 1)[1]
    assert links.verify(token, NOW).valid

    footer = links.footer_for(7, "acme", "ann@example.com", NOW, "GR")
    assert "καταργήσετε" in footer


def test_footer_falls_back_to_english():
    assert "unsubscribe here" in unsubscribe_footer("https://x.test/u", "xx")
    assert "unsubscribe here" in unsubscribe_footer("https://x.test/u", None)


def test_inject_footer_before_last_body_close():
    html = "<html><body><p>Hi</p></BODY></html>"
    assert inject_footer(html, "<footer/>") == "<html><body><p>Hi</p><footer/></BODY></html>"


def test_inject_footer_appends_without_body():
    assert inject_footer("<p>Hi</p>", "<footer/>") == "<p>Hi</p><footer/>"
