import pytest

from docscribe.errors import MalformedResponseError, NoResponseError, OperationFailedError
from docscribe.models.document import Document
from docscribe.models.prompt import Prompt
from docscribe.models.schema import DocumentSchema, ExtractedData
from docscribe.services.ai_gateway import AIGateway
from docscribe.services.prompt_builder import build_schema_generation_prompt

from conftest import SCHEMA_RESPONSE, USER_ID


def transcribed(doc_id):
    return Document(id=doc_id, name=f"{doc_id}.pdf", type="pdf", user_id=USER_ID, status="processed", transcription="text")


def test_request_payload_carries_operation_ids_and_model(gateway, backend):
    gateway.invoke(Prompt(operation="transcribe", document_ids=["a"], text="go", image_urls=["p1.jpg"]))

    operation, payload = backend.calls[0]
    assert operation == "transcribe"
    assert payload["documentIds"] == ["a"]
    assert payload["model"] == "gemini-test"
    assert payload["imageUrls"] == ["p1.jpg"]


def test_every_prompt_is_audited_before_dispatch(gateway, prompt_store):
    gateway.invoke(build_schema_generation_prompt([transcribed("a"), transcribed("b")]))

    assert [p.prompt_type for p in prompt_store.for_document("a")] == ["generate_schema"]
    assert len(prompt_store.for_document("b")) == 1


def test_schema_round_trip_keeps_every_table_and_field(gateway):
    schema = gateway.invoke(build_schema_generation_prompt([transcribed("a")]))

    assert isinstance(schema, DocumentSchema)
    assert schema.table_count == len(SCHEMA_RESPONSE["tables"])
    assert schema.field_count == sum(len(t["fields"]) for t in SCHEMA_RESPONSE["tables"])
    assert [t.display_order for t in schema.structure] == [0, 1]
    assert schema.find_table("patients").fields[2].enum_values == ["female", "male", "other"]
    assert len(schema.suggestions) == 3


def test_transcription_returns_text(gateway):
    text = gateway.invoke(Prompt(operation="transcribe", document_ids=["a"], text="go"))
    assert text.startswith("# Intake form")


def test_extraction_returns_extracted_data(gateway):
    data = gateway.invoke(Prompt(operation="extract_data", document_ids=["a"], text="go", schema_id="s-1"))
    assert isinstance(data, ExtractedData)
    assert data.schema_id == "s-1"
    assert data.values["patients"]["full_name"] == "Jane Doe"
    assert data.confidence == pytest.approx(0.87)


def test_missing_response_is_no_response_error(prompt_store):
    class Silent:
        def invoke(self, operation, payload):
            return None

    with pytest.raises(NoResponseError):
        AIGateway(Silent(), prompt_store).invoke(Prompt(operation="transcribe", document_ids=["a"], text="go"))


def test_operation_failure_is_typed_and_recorded(gateway, backend, prompt_store):
    backend.fail_transcription.add("a")

    with pytest.raises(OperationFailedError) as excinfo:
        gateway.invoke(Prompt(operation="transcribe", document_ids=["a"], text="go"))

    assert excinfo.value.message == "Model overloaded"
    assert excinfo.value.name == "ServerError"
    assert excinfo.value.stack == "Traceback ..."
    types = [p.prompt_type for p in prompt_store.for_document("a")]
    assert "transcribe_error" in types


def test_plain_string_error_is_accepted(gateway, backend):
    backend.responses["transcribe"] = {"success": False, "error": "quota exceeded"}
    with pytest.raises(OperationFailedError, match="quota exceeded"):
        gateway.invoke(Prompt(operation="transcribe", document_ids=["a"], text="go"))


@pytest.mark.parametrize("operation, response", [
    ("generate_schema", {"success": True, "schema": {"name": "x"}}),
    ("generate_schema", {"success": True, "schema": {"tables": [{"name": "t", "fields": [{"name": "f", "type": "blob"}]}]}}),
    ("generate_schema", {"success": True, "schema": {"tables": [{"name": "t", "fields": ["a", "b"]}]}}),
    ("generate_schema", {"success": True, "schema": {"tables": ["patients"]}}),
    ("generate_schema", {"success": True, "schema": "patients, visits"}),
    ("extract_data", {"success": True, "tables": ["not", "a", "dict"], "confidence": 0.5}),
    ("extract_data", {"success": True, "tables": {}, "confidence": 7}),
    ("transcribe", {"success": True, "transcription": "   "}),
    ("transcribe", {"transcription": "no success flag"}),
])
def test_malformed_payloads_are_never_defaulted(gateway, backend, operation, response):
    backend.responses[operation] = response
    with pytest.raises(MalformedResponseError) as excinfo:
        gateway.invoke(Prompt(operation=operation, document_ids=["a"], text="go"))
    assert excinfo.value.raw == response


def test_field_type_synonyms_are_normalized(gateway, backend):
    backend.responses["generate_schema"] = {
        "success": True,
        "schema": {"tables": [{"name": "t", "fields": [{"name": "age", "type": "integer"}]}]},
    }
    schema = gateway.invoke(Prompt(operation="generate_schema", document_ids=["a"], text="go"))
    assert schema.structure[0].fields[0].type == "number"


def test_unknown_operation_returns_completion_marker(gateway):
    prompt = Prompt.model_construct(operation="summarize", document_ids=["a"], text="go", image_urls=[], schema_id=None)
    assert gateway.invoke(prompt) == {"status": "completed"}
