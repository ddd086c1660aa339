"""Tests for automationlab.validation."""

import logging

import pytest

from automationlab.errors import ValidationError
from automationlab.validation import (
    sanitize_bucket_name,
    validate_ami_id,
    validate_bucket_name,
    validate_cidr,
    validate_instance_id,
    validate_instance_type,
    validate_key_pair_name,
    validate_port,
    validate_region,
    validate_security_group_id,
    validate_security_group_name,
    validate_vpc_id,
    validate_workspace_name,
)


class TestRegion:
    def test_known_region(self):
        assert validate_region("eu-west-2") == "eu-west-2"

    def test_unknown_but_well_formed_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="automationlab"):
            assert validate_region("xx-newplace-9") == "xx-newplace-9"
        assert "not in known list" in caplog.text

    @pytest.mark.parametrize("region", ["", "useast1", "US-EAST-1", "us-east"])
    def test_invalid(self, region):
        with pytest.raises(ValidationError):
            validate_region(region)


class TestBucketName:
    @pytest.mark.parametrize("name", ["my-bucket", "abc", "lab.bucket-1"])
    def test_valid(self, name):
        assert validate_bucket_name(name) == name

    @pytest.mark.parametrize("name,reason", [
        ("ab", "3-63"),
        ("a" * 64, "3-63"),
        ("MyBucket", "lowercase"),
        ("my_bucket", "underscores"),
        ("-bucket", "start and end"),
        ("my..bucket", "consecutive dots"),
        ("192.168.1.1", "IP address"),
    ])
    def test_invalid(self, name, reason):
        with pytest.raises(ValidationError, match=reason):
            validate_bucket_name(name)

    def test_sanitize(self):
        assert sanitize_bucket_name("My_Lab..Bucket!") == "my-lab-bucket"

    def test_sanitize_trims_edges_and_length(self):
        name = sanitize_bucket_name("--" + "x" * 80 + "--")
        assert len(name) == 63
        assert name[0].isalnum()

    def test_sanitized_names_validate(self):
        assert validate_bucket_name(sanitize_bucket_name("AutomationLab_Bucket-1700000000"))


class TestIdentifiers:
    def test_security_group_id_strips_whitespace(self):
        assert validate_security_group_id(" sg-0123abcd\n") == "sg-0123abcd"

    @pytest.mark.parametrize("value", ["sg-123", "sg-XYZ12345", "i-0123abcd"])
    def test_bad_security_group_id(self, value):
        with pytest.raises(ValidationError):
            validate_security_group_id(value)

    def test_instance_id(self):
        assert validate_instance_id("i-0123456789abcdef0") == "i-0123456789abcdef0"
        with pytest.raises(ValidationError):
            validate_instance_id("i-zz")

    def test_ami_id(self):
        assert validate_ami_id("ami-0abc1234") == "ami-0abc1234"
        with pytest.raises(ValidationError):
            validate_ami_id("ami-")

    def test_vpc_id(self):
        assert validate_vpc_id("vpc-0abc1234") == "vpc-0abc1234"
        with pytest.raises(ValidationError):
            validate_vpc_id("vpc1234")


class TestNames:
    def test_security_group_name(self):
        assert validate_security_group_name("lab sg: web/ssh") == "lab sg: web/ssh"
        with pytest.raises(ValidationError):
            validate_security_group_name("badéname")

    def test_key_pair_name(self):
        assert validate_key_pair_name("lab.key_1-a") == "lab.key_1-a"
        with pytest.raises(ValidationError):
            validate_key_pair_name("lab key")

    def test_workspace_name(self):
        assert validate_workspace_name("dev-1") == "dev-1"
        with pytest.raises(ValidationError):
            validate_workspace_name("../etc")


class TestInstanceType:
    def test_free_tier_no_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="automationlab"):
            validate_instance_type("t3.micro")
        assert caplog.text == ""

    def test_other_type_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="automationlab"):
            validate_instance_type("m5.large")
        assert "free-tier" in caplog.text

    def test_bad_format(self):
        with pytest.raises(ValidationError):
            validate_instance_type("large")


class TestNetwork:
    @pytest.mark.parametrize("cidr", ["0.0.0.0/0", "10.0.0.0/16", "203.0.113.7/32"])
    def test_cidr_valid(self, cidr):
        assert validate_cidr(cidr) == cidr

    @pytest.mark.parametrize("cidr", ["10.0.0.0", "300.0.0.0/8", "10.0.0.0/33", "abc/8"])
    def test_cidr_invalid(self, cidr):
        with pytest.raises(ValidationError):
            validate_cidr(cidr)

    def test_port(self):
        assert validate_port("22") == 22
        for bad in ("0", "65536", "http"):
            with pytest.raises(ValidationError):
                validate_port(bad)
