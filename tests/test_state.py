"""Tests for core.state models."""

from core.state import (
    CLIENT_IDLE,
    PLANNING,
    ClientPipelineState,
    FileManifestEntry,
    GeneratedFile,
    GenerationRequest,
    PipelineRun,
    ValidationResult,
)


def test_request_from_body():
    req = GenerationRequest.from_body({
        "prompt": "  a bakery site  ",
        "userId": "u1",
        "currentCode": "export default 1;",
        "projectId": "p1",
        "skipArchitect": True,
    })
    assert req.prompt == "a bakery site"
    assert req.user_id == "u1"
    assert req.existing_code == "export default 1;"
    assert req.project_id == "p1"
    assert req.skip_planning is True
    assert req.style_profile is None


def test_request_to_body_omits_empty_fields():
    req = GenerationRequest(prompt="hi", user_id="u1")
    assert req.to_body() == {"prompt": "hi", "userId": "u1"}


def test_manifest_entry_to_dict():
    entry = FileManifestEntry(path="/App.tsx", description="Entry", line_budget=120, priority=1)
    assert entry.to_dict() == {"path": "/App.tsx", "description": "Entry", "lineEstimate": 120, "priority": 1}


def test_validation_result_healing_context():
    result = ValidationResult(
        passed=False, category="MissingImport", explanation="'useState' is used but never imported",
        line=4, fix_suggestion="Add the import",
    )
    ctx = result.to_healing_context("code")
    assert ctx == {
        "errorType": "MissingImport",
        "errorMessage": "'useState' is used but never imported",
        "location": "line 4",
        "failedCode": "code",
        "fixSuggestion": "Add the import",
    }
    assert not result.is_policy


def test_policy_severity():
    assert ValidationResult(passed=False, category="Policy", severity="policy").is_policy
    assert not ValidationResult(passed=True, severity="policy").is_policy


def test_generated_file_line_count():
    ok = ValidationResult(passed=True)
    assert GeneratedFile("/a.ts", "a\nb\nc", ok).line_count == 3
    assert GeneratedFile("/a.ts", "", ok).line_count == 0


def test_pipeline_run_defaults():
    run = PipelineRun(id="r1", request=GenerationRequest(prompt="x", user_id="u1"))
    assert run.stage == PLANNING
    assert run.files == []
    assert run.debited is False


def test_put_file_replaces_by_path():
    run = PipelineRun(id="r1", request=GenerationRequest(prompt="x", user_id="u1"))
    ok = ValidationResult(passed=True)
    run.put_file(GeneratedFile("/App.tsx", "v1", ok))
    run.put_file(GeneratedFile("/data/a.ts", "a", ok))
    run.put_file(GeneratedFile("/App.tsx", "v2", ok))
    assert [f.path for f in run.files] == ["/data/a.ts", "/App.tsx"]
    assert run.files[-1].content == "v2"


def test_client_state_defaults():
    state = ClientPipelineState()
    assert state.stage == CLIENT_IDLE
    assert state.logs == []
    assert state.is_running is False
    assert state.locked_project_id is None
