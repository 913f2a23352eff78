import logging

import pytest

from openapi_dispatch.models import Request, SetMatchType, ValidationResult
from openapi_dispatch.openapi import DefinitionError, OperationTable
from openapi_dispatch.router import OperationRouter
from openapi_dispatch.validation import (
    OpenAPIValidator,
    SchemaCompiler,
    operation_key,
    to_json_schema,
)


def _json(body):
    return {"headers": {"Content-Type": "application/json"}, "body": body}


class TestToJsonSchema:
    def test_nullable(self):
        schema = to_json_schema({"type": "string", "nullable": True, "enum": ["a"]})
        assert schema == {"type": ["string", "null"], "enum": ["a", None]}

    def test_nested_nullable(self):
        schema = to_json_schema(
            {"type": "object", "properties": {"tag": {"type": "string", "nullable": True}}}
        )
        assert schema["properties"]["tag"]["type"] == ["string", "null"]

    def test_boolean_exclusive_bounds(self):
        schema = to_json_schema({"type": "integer", "minimum": 1, "exclusiveMinimum": True, "exclusiveMaximum": False})
        assert schema == {"type": "integer", "exclusiveMinimum": 1}

    def test_boolean_exclusive_bounds_kept_for_draft4(self):
        schema = {"type": "integer", "minimum": 1, "exclusiveMinimum": True}
        assert to_json_schema(schema, draft="4") == schema

    def test_input_is_untouched(self):
        schema = {"type": "string", "nullable": True}
        to_json_schema(schema)
        assert schema == {"type": "string", "nullable": True}


class TestSchemaCompiler:
    def test_validators_are_compiled_per_target(self, compiler, table):
        operation = table.get_operation("createPet")
        for target in ("path", "query", "header", "cookie", "requestBody:application/json"):
            assert compiler.get(operation, target) is not None
        assert compiler.get(operation, "response:201:application/json") is not None
        assert compiler.get(operation, "response:default:application/json") is not None
        assert compiler.get(operation, "responseHeaders:201:exact") is not None

    def test_non_json_media_types_are_not_compiled(self, compiler, table):
        operation = table.get_operation("getOwnerPet")
        assert compiler.get(operation, "response:200:text/plain") is None

    def test_operations_without_id_are_keyed_by_route(self, compiler, table):
        operation = table.find("get", "/health")
        assert operation_key(operation) == "get /health"
        assert compiler.get(operation, "query") is not None

    def test_compiled_once(self, compiler, validator):
        compiled = len(compiler)
        for _ in range(3):
            validator.validate_request(Request("GET", "/pets/42"))
        assert len(compiler) == compiled

    def test_unknown_draft(self, table):
        with pytest.raises(ValueError, match="Unsupported JSON Schema draft"):
            SchemaCompiler(table, draft="3")

    @pytest.mark.parametrize("format_checker, valid", [(False, True), (True, False)])
    def test_format_checker(self, format_checker, valid):
        document = {
            "paths": {
                "/users": {
                    "get": {
                        "operationId": "findUser",
                        "parameters": [{"name": "email", "in": "query", "schema": {"type": "string", "format": "email"}}],
                        "responses": {},
                    }
                }
            }
        }
        table = OperationTable(document)
        compiler = SchemaCompiler(table, format_checker=format_checker)
        compiler.compile_all()
        validator = OpenAPIValidator(table, OperationRouter(table), compiler)
        result = validator.validate_request(Request("GET", "/users?email=nobody"))
        assert result.valid is valid
        if not valid:
            assert result.errors[0].keyword == "format"


class TestSchemaDraft:
    @staticmethod
    def _validator(openapi_version, **options):
        document = {
            "openapi": openapi_version,
            "paths": {
                "/points": {
                    "post": {
                        "operationId": "addPoint",
                        "requestBody": {
                            "required": True,
                            "content": {
                                "application/json": {
                                    "schema": {"type": "array", "prefixItems": [{"type": "integer"}]}
                                }
                            },
                        },
                        "responses": {},
                    }
                }
            },
        }
        table = OperationTable(document)
        compiler = SchemaCompiler(table, **options)
        compiler.compile_all()
        return compiler, OpenAPIValidator(table, OperationRouter(table), compiler)

    @pytest.mark.parametrize(
        "version, draft",
        [("3.1.0", "2020-12"), ("3.1.1", "2020-12"), ("3.0.3", "7"), (None, "7")],
    )
    def test_draft_follows_openapi_version(self, version, draft):
        compiler, _ = self._validator(version)
        assert compiler.draft == draft

    def test_openapi_31_keywords_are_enforced(self):
        _, validator = self._validator("3.1.0")
        request = Request("POST", "/points", headers={"Content-Type": "application/json"}, body='["x"]')
        result = validator.validate_request(request)
        assert [(e.location, e.path, e.keyword) for e in result.errors] == [("requestBody", "/0", "type")]
        request = Request("POST", "/points", headers={"Content-Type": "application/json"}, body="[1]")
        assert validator.validate_request(request).valid is True

    def test_explicit_draft_wins(self):
        compiler, validator = self._validator("3.1.0", draft="7")
        assert compiler.draft == "7"
        request = Request("POST", "/points", body=["x"])
        assert validator.validate_request(request).valid is True


class TestInvalidSchemas:
    DOCUMENT = {
        "openapi": "3.0.3",
        "paths": {
            "/t": {
                "get": {
                    "operationId": "t",
                    "parameters": [{"name": "q", "in": "query", "schema": {"type": "int"}}],
                    "responses": {},
                }
            }
        },
    }

    def test_lenient_leaves_target_unconstrained(self, caplog):
        table = OperationTable(self.DOCUMENT)
        compiler = SchemaCompiler(table)
        with caplog.at_level(logging.WARNING):
            compiler.compile_all()
        assert "Invalid query schema for t" in caplog.text

        validator = OpenAPIValidator(table, OperationRouter(table), compiler)
        assert validator.validate_request(Request("GET", "/t?q=1")).valid is True

    def test_strict_raises(self):
        compiler = SchemaCompiler(OperationTable(self.DOCUMENT), strict=True)
        with pytest.raises(DefinitionError, match="Invalid query schema for t"):
            compiler.compile_all()


class TestValidateRequest:
    def test_valid_path_parameter(self, validator):
        result = validator.validate_request(Request("GET", "/pets/42"))
        assert result == ValidationResult(valid=True, errors=None)

    def test_invalid_path_parameter(self, validator):
        result = validator.validate_request(Request("GET", "/pets/abc"))
        assert result.valid is False
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.location == "path"
        assert error.path == "/id"
        assert error.keyword == "type"
        assert "id" in str(error)

    def test_each_violation_is_reported(self, validator):
        result = validator.validate_request(Request("GET", "/pets?limit=0&status=lost"))
        assert [(e.location, e.path, e.keyword) for e in result.errors] == [
            ("query", "/limit", "minimum"),
            ("query", "/status", "enum"),
        ]

    def test_wrong_query_type(self, validator):
        result = validator.validate_request(Request("GET", "/pets?limit=ten"))
        assert [(e.path, e.keyword) for e in result.errors] == [("/limit", "type")]

    def test_undeclared_query_parameter(self, validator):
        result = validator.validate_request(Request("GET", "/pets?color=red"))
        assert [(e.location, e.keyword) for e in result.errors] == [("query", "additionalProperties")]

    def test_query_styles_validate(self, validator):
        result = validator.validate_request(Request("GET", "/search?filter[minAge]=2&ids=1&ids=2&pipes=a|b"))
        assert result.valid is True
        result = validator.validate_request(Request("GET", "/search?filter[minAge]=old"))
        assert [(e.path, e.keyword) for e in result.errors] == [("/filter/minAge", "type")]

    def test_missing_required_cookie(self, validator):
        result = validator.validate_request(Request("DELETE", "/pets/1"))
        assert [(e.location, e.keyword) for e in result.errors] == [("cookie", "required")]
        result = validator.validate_request(
            Request("DELETE", "/pets/1", headers={"Cookie": "session=abc; other=1"})
        )
        assert result.valid is True

    def test_valid_body(self, validator):
        result = validator.validate_request(Request("POST", "/pets", **_json('{"name": "Rex", "tag": null}')))
        assert result.valid is True
        assert result.errors is None

    def test_body_violations(self, validator):
        result = validator.validate_request(Request("POST", "/pets", body={"status": "lost"}))
        assert result.valid is False
        assert sorted((e.location, e.keyword) for e in result.errors) == [
            ("requestBody", "enum"),
            ("requestBody", "required"),
        ]

    def test_missing_required_body(self, validator):
        result = validator.validate_request(Request("POST", "/pets"))
        assert [(e.location, e.keyword) for e in result.errors] == [("requestBody", "required")]

    def test_malformed_json_body(self, validator):
        result = validator.validate_request(Request("POST", "/pets", **_json('{"name": ')))
        assert len(result.errors) == 1
        assert result.errors[0].location == "requestBody"
        assert result.errors[0].message.startswith("Malformed JSON body")

    def test_undeclared_media_type(self, validator):
        result = validator.validate_request(
            Request("POST", "/pets", headers={"Content-Type": "text/plain"}, body="Rex")
        )
        assert [(e.location, e.keyword) for e in result.errors] == [("requestBody", "mediaType")]

    def test_errors_from_several_locations(self, validator):
        result = validator.validate_request(
            Request("POST", "/pets?verbose=1", headers={"Content-Type": "application/json"}, body="{}")
        )
        assert [e.location for e in result.errors] == ["query", "requestBody"]

    def test_operation_by_id(self, validator):
        result = validator.validate_request(Request("GET", "/pets/7"), "getPetById")
        assert result.valid is True

    def test_parsed_request(self, validator, router, table):
        parsed = router.parse_request(Request("GET", "/pets/abc"))
        result = validator.validate_request(parsed, table.get_operation("getPetById"))
        assert len(result.errors) == 1

    def test_unknown_operation(self, validator):
        result = validator.validate_request(Request("GET", "/nowhere"))
        assert result.valid is False
        assert result.errors[0].location == "operation"

    def test_passthrough_media_type(self):
        document = {
            "paths": {
                "/upload": {
                    "post": {
                        "operationId": "upload",
                        "requestBody": {
                            "required": True,
                            "content": {"application/octet-stream": {"schema": {"type": "string", "format": "binary"}}},
                        },
                        "responses": {},
                    }
                }
            }
        }
        table = OperationTable(document)
        compiler = SchemaCompiler(table)
        compiler.compile_all()
        validator = OpenAPIValidator(table, OperationRouter(table), compiler)
        result = validator.validate_request(
            Request("POST", "/upload", headers={"content-type": "application/octet-stream"}, body=b"\x00\xff")
        )
        assert result.valid is True


class TestValidateResponse:
    def test_valid_response(self, validator):
        result = validator.validate_response({"id": 1, "name": "Rex"}, "getPetById")
        assert result.valid is True
        assert result.errors is None

    def test_invalid_response(self, validator):
        result = validator.validate_response({"name": "Rex"}, "getPetById", 200)
        assert result.valid is False
        assert result.errors[0].location == "responseBody"

    def test_default_response_is_used_for_undeclared_status(self, validator):
        assert validator.validate_response({"code": 1, "message": "boom"}, "createPet", 400).valid is True
        assert validator.validate_response({"code": "x"}, "createPet", 500).valid is False

    def test_response_without_content(self, validator):
        assert validator.validate_response(None, "deletePet").valid is True

    def test_non_json_response_is_not_validated(self, validator):
        assert validator.validate_response(123, "getOwnerPet", 200).valid is True

    def test_undeclared_status(self, validator):
        result = validator.validate_response({}, "getPetById", 500)
        assert result.valid is False
        assert "500" in result.errors[0].message

    def test_unknown_operation(self, validator):
        assert validator.validate_response({}, "nope").valid is False


class TestValidateResponseHeaders:
    @pytest.mark.parametrize(
        "headers, mode, valid",
        [
            ({}, SetMatchType.ANY, True),
            ({"X-Total-Count": "10", "X-Other": "1"}, SetMatchType.ANY, True),
            ({"X-Total-Count": "many"}, SetMatchType.ANY, False),
            ({}, SetMatchType.SUPERSET, False),
            ({"x-total-count": "5", "X-Other": "y"}, SetMatchType.SUPERSET, True),
            ({"X-Other": "y"}, SetMatchType.SUBSET, False),
            ({}, SetMatchType.SUBSET, True),
            ({"X-Total-Count": "5"}, SetMatchType.EXACT, True),
            ({"X-Total-Count": "5", "X-Other": "y"}, SetMatchType.EXACT, False),
            ({}, SetMatchType.EXACT, False),
            ({"X-Total-Count": "5"}, "exact", True),
        ],
    )
    def test_set_match_modes(self, validator, headers, mode, valid):
        result = validator.validate_response_headers(headers, "listPets", 200, set_match_type=mode)
        assert result.valid is valid
        assert (result.errors is None) is valid

    def test_default_mode_and_status(self, validator):
        result = validator.validate_response_headers({"X-Total-Count": "3"}, "listPets")
        assert result.valid is True

    def test_undeclared_status(self, validator):
        result = validator.validate_response_headers({}, "listPets", 404)
        assert result.valid is False
        assert result.errors[0].location == "responseHeaders"
