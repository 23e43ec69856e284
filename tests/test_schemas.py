"""Tests for role profile validation and email normalization."""

import pytest

from accountcore.service.errors import ValidationError
from accountcore.service.schemas import (
    CustomerProfile,
    ProviderProfile,
    dump_profile,
    normalize_registration_email,
    parse_profile,
    validate_email,
)
from accountcore.storage.models import Role

from conftest import customer_profile, provider_profile


class TestParseProfile:
    def test_customer_aliases(self):
        profile = parse_profile(Role.CUSTOMER, customer_profile(preferredContactMethod="sms"))
        assert isinstance(profile, CustomerProfile)
        assert profile.first_name == "Alice"
        assert profile.preferred_contact_method == "sms"

    def test_provider_aliases(self):
        profile = parse_profile("provider", provider_profile())
        assert isinstance(profile, ProviderProfile)
        assert profile.experience_years == 7
        assert profile.hourly_rate == 45.0

    def test_provider_requires_skills(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_profile("provider", provider_profile(skills=[]))
        fields = [err["field"] for err in excinfo.value.detail["errors"]]
        assert any("skills" in field for field in fields)

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_profile("customer", customer_profile(isAdmin=True))

    def test_names_must_not_be_blank(self):
        with pytest.raises(ValidationError):
            parse_profile("customer", customer_profile(firstName="   "))

    def test_unknown_role(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_profile("superuser", customer_profile())
        assert excinfo.value.detail == {"role": "superuser"}

    def test_role_mismatch(self):
        with pytest.raises(ValidationError):
            parse_profile("customer", customer_profile(role="admin"))

    def test_availability_times(self):
        slot = {"day": "monday", "start": "09:00", "end": "17:30"}
        assert parse_profile("provider", provider_profile(availability=[slot])).availability[0].end == "17:30"
        with pytest.raises(ValidationError):
            parse_profile("provider", provider_profile(availability=[dict(slot, end="25:00")]))

    def test_phone_format(self):
        assert parse_profile("customer", customer_profile(phone="+1 (555) 000-1111")).phone
        with pytest.raises(ValidationError):
            parse_profile("customer", customer_profile(phone="call me"))


class TestDumpProfile:
    def test_snake_case_without_role_or_nulls(self):
        dumped = dump_profile(parse_profile("provider", provider_profile()))
        assert dumped["first_name"] == "Bob"
        assert dumped["experience_years"] == 7
        assert "role" not in dumped
        assert "bio" not in dumped

    def test_dumped_profile_parses_again(self):
        dumped = dump_profile(parse_profile("customer", customer_profile()))
        assert parse_profile("customer", dumped).last_name == "Smith"


class TestEmail:
    def test_normalizes(self):
        assert validate_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "value",
        ["no-at-sign", "@example.com", "alice@", "alice@localhost", "al ice@example.com", "a@-bad-.com"],
    )
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            validate_email(value)

    def test_length_limits(self):
        with pytest.raises(ValueError):
            validate_email("a" * 65 + "@example.com")
        with pytest.raises(ValueError):
            validate_email("a@" + "b" * 250 + ".com")

    def test_registration_wraps_errors(self):
        with pytest.raises(ValidationError) as excinfo:
            normalize_registration_email("not-an-email")
        assert excinfo.value.detail == {"field": "email"}
