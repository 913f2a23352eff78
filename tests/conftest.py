from pathlib import Path

import pytest
import yaml

from openapi_dispatch.config import Settings
from openapi_dispatch.openapi import OperationTable, dereference
from openapi_dispatch.router import OperationRouter
from openapi_dispatch.validation import OpenAPIValidator, SchemaCompiler

FIXTURES = Path(__file__).parent / "fixtures"
PETSTORE = FIXTURES / "petstore.yaml"


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def petstore_document():
    return yaml.safe_load(PETSTORE.read_text(encoding="utf-8"))


@pytest.fixture
def definition(petstore_document):
    return dereference(petstore_document)


@pytest.fixture
def table(definition):
    return OperationTable(definition)


@pytest.fixture
def router(table):
    return OperationRouter(table)


@pytest.fixture
def compiler(table):
    compiler = SchemaCompiler(table)
    compiler.compile_all()
    return compiler


@pytest.fixture
def validator(table, router, compiler):
    return OpenAPIValidator(table, router, compiler)
