"""
Unit tests for merchant name normalization.
"""
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from recurwatch.services.merchant_normalizer import (  # noqa: E402
    leading_token,
    normalize_merchant_name,
)


def test_strips_reference_and_case() -> None:
    assert normalize_merchant_name("NETFLIX.COM *1234") == "netflix.com"
    assert normalize_merchant_name("Spotify #998877") == "spotify"
    assert normalize_merchant_name("  Adobe   Creative    Cloud ") == "adobe creative cloud"
    print("✓ reference and case stripping")


def test_strips_company_suffix() -> None:
    assert normalize_merchant_name("NETFLIX INC") == "netflix"
    assert normalize_merchant_name("Dropbox, LLC.") == "dropbox,"
    assert normalize_merchant_name("Acme Corporation") == "acme"
    # Suffix only counts as a trailing whole word
    assert normalize_merchant_name("Costco Wholesale") == "costco wholesale"
    assert normalize_merchant_name("Incognito VPN") == "incognito vpn"
    print("✓ company suffix stripping")


def test_short_names_keep_trimmed_original() -> None:
    assert normalize_merchant_name("  BP ") == "BP"
    assert normalize_merchant_name("O2 *77") == "O2 *77"
    assert normalize_merchant_name("Co Inc") == "Co Inc"
    print("✓ short names kept")


def test_empty_input() -> None:
    assert normalize_merchant_name("") == ""
    assert normalize_merchant_name(None) == ""
    print("✓ empty input")


def test_normalized_key_is_long_enough_or_trimmed_original() -> None:
    samples = [
        "NETFLIX.COM *1234",
        "BP",
        "  x  ",
        "AB Inc",
        "Amazon Prime*AB12",
        "Hulu LLC",
        "###123",
        "Gym Co.",
        "YouTube Premium",
    ]
    for raw in samples:
        key = normalize_merchant_name(raw)
        assert len(key) >= 3 or key == raw.strip(), raw
    print("✓ normalizer invariant")


def test_leading_token() -> None:
    assert leading_token("Netflix Inc") == "Netflix"
    assert leading_token("   spotify  premium") == "spotify"
    assert leading_token("   ") == ""
    assert leading_token(None) == ""
    print("✓ leading token")


if __name__ == "__main__":
    test_strips_reference_and_case()
    test_strips_company_suffix()
    test_short_names_keep_trimmed_original()
    test_empty_input()
    test_normalized_key_is_long_enough_or_trimmed_original()
    test_leading_token()
    print("All merchant normalizer tests passed.")
