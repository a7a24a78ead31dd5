"""Tests for connection descriptor validation and username syntax."""

import json

import pytest

from helpers import mongo_config, mysql_config, postgres_config

from inventra_engine.common.exceptions import ConfigurationError
from inventra_engine.descriptors.schemas import (
    HostKind,
    MongoDBDescriptor,
    MySQLDescriptor,
    PostgreSQLDescriptor,
    classify_mongo_host,
)
from inventra_engine.descriptors.validator import validate_descriptor, validate_username_syntax


class TestValidateDescriptor:
    def test_mysql(self):
        d = validate_descriptor(mysql_config())
        assert isinstance(d, MySQLDescriptor)
        assert d.engine == "mysql"
        assert d.options.connection_limit == 10
        assert d.options.charset == "utf8mb4"

    def test_postgresql(self):
        d = validate_descriptor(postgres_config())
        assert isinstance(d, PostgreSQLDescriptor)
        assert d.port == 5432

    def test_json_header_form(self):
        d = validate_descriptor(json.dumps(mysql_config(userId="user_x_1")))
        assert d.database == "db1"

    def test_passes_through_built_descriptor(self):
        d = validate_descriptor(mysql_config())
        assert validate_descriptor(d) is d

    def test_options_alias_and_extras(self):
        d = validate_descriptor(mysql_config(options={"connectionLimit": 3, "ssl": True, "timezone": "Z"}))
        assert d.options.connection_limit == 3
        assert d.options.ssl is True

    def test_connection_limit_bounds(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_descriptor(mysql_config(options={"connectionLimit": 0}))
        assert "connectionLimit" in exc_info.value.message or "connection_limit" in exc_info.value.message

    def test_invalid_json(self):
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            validate_descriptor("{not json")

    def test_missing_type(self):
        with pytest.raises(ConfigurationError, match="type"):
            validate_descriptor({"host": "localhost", "port": 3306, "database": "db1"})

    def test_unsupported_type(self):
        with pytest.raises(ConfigurationError, match="Unsupported database type: oracle"):
            validate_descriptor(mysql_config(type="oracle"))

    @pytest.mark.parametrize("field", ["host", "port", "database"])
    def test_missing_required_field(self, field):
        config = mysql_config()
        del config[field]
        with pytest.raises(ConfigurationError, match=field) as exc_info:
            validate_descriptor(config)
        assert exc_info.value.engine == "mysql"
        assert exc_info.value.status_code == 400

    def test_self_hosted_mongo_requires_port(self):
        config = mongo_config()
        del config["port"]
        with pytest.raises(ConfigurationError, match="port"):
            validate_descriptor(config)

    @pytest.mark.parametrize("host", [123, ["cluster0.xxxx.mongodb.net"], {"h": 1}])
    def test_non_string_host(self, host):
        with pytest.raises(ConfigurationError, match="host must be a string") as exc_info:
            validate_descriptor({"type": "mongodb", "host": host, "database": "d"})
        assert exc_info.value.engine == "mongodb"
        assert exc_info.value.status_code == 400

    def test_managed_mongo_port_optional(self):
        d = validate_descriptor({"type": "mongodb", "host": "cluster0.xxxx.mongodb.net", "database": "db1"})
        assert isinstance(d, MongoDBDescriptor)
        assert d.is_managed
        assert d.port is None

    def test_corrupted_mongo_host(self):
        with pytest.raises(ConfigurationError, match="Corrupted"):
            validate_descriptor(mongo_config(host="someone@gmail.com"))

    def test_corrupted_mongo_password(self):
        with pytest.raises(ConfigurationError, match="Corrupted"):
            validate_descriptor(mongo_config(username="a", password="me@yahoo.com"))

    def test_public_fields_hide_credentials(self):
        d = validate_descriptor(mysql_config())
        assert d.public_fields() == {"type": "mysql", "host": "localhost", "port": 3306, "database": "db1"}
        assert "secret" not in json.dumps(d.redacted())

    def test_fingerprint_tracks_credentials(self):
        a = validate_descriptor(mysql_config())
        b = validate_descriptor(mysql_config(password="other"))
        assert a.fingerprint() == validate_descriptor(mysql_config()).fingerprint()
        assert a.fingerprint() != b.fingerprint()


class TestClassifyMongoHost:
    @pytest.mark.parametrize("host", [
        "cluster0.xxxx.mongodb.net",
        "mongodb+srv://cluster0.xxxx.mongodb.net",
        "mongodb+srv://internal.example.com",
    ])
    def test_managed(self, host):
        assert classify_mongo_host(host) is HostKind.MANAGED_CLOUD

    @pytest.mark.parametrize("host", ["localhost", "127.0.0.1", "mongo.internal", "", None, 27017])
    def test_self_hosted(self, host):
        assert classify_mongo_host(host) is HostKind.SELF_HOSTED


class TestUsernameSyntax:
    def test_three_characters_pass(self):
        assert validate_username_syntax("a_1").available is True

    def test_two_characters_fail(self):
        result = validate_username_syntax("ab")
        assert result.available is False
        assert "at least 3" in result.message

    @pytest.mark.parametrize("username", ["abc-def", "abc def", "abc.d", "ãbc", "abc!"])
    def test_other_characters_fail(self, username):
        result = validate_username_syntax(username)
        assert result.available is False
        assert "letters, numbers, and underscores" in result.message
