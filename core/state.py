"""Pipeline data models shared across all stages."""

from __future__ import annotations

from dataclasses import dataclass, field

# Server-side run stages
PLANNING = "planning"
BUILDING = "building"
VALIDATING = "validating"
HEALING = "healing"
BUNDLING = "bundling"
DONE = "done"
FAILED = "failed"


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    user_id: str
    existing_code: str | None = None
    style_profile: str | None = None
    project_id: str | None = None
    skip_planning: bool = False

    @classmethod
    def from_body(cls, body):
        """Build from the inbound JSON body (camelCase keys)."""
        return cls(
            prompt=(body.get("prompt") or "").strip(),
            user_id=(body.get("userId") or "").strip(),
            existing_code=body.get("currentCode") or None,
            style_profile=body.get("styleProfile") or None,
            project_id=body.get("projectId") or None,
            skip_planning=bool(body.get("skipArchitect", False)),
        )

    def to_body(self):
        body = {"prompt": self.prompt, "userId": self.user_id}
        if self.existing_code:
            body["currentCode"] = self.existing_code
        if self.style_profile:
            body["styleProfile"] = self.style_profile
        if self.project_id:
            body["projectId"] = self.project_id
        if self.skip_planning:
            body["skipArchitect"] = True
        return body


@dataclass
class FileManifestEntry:
    path: str           # unique per run, e.g. "/components/Hero.tsx"
    description: str
    line_budget: int
    priority: int

    def to_dict(self):
        return {
            "path": self.path,
            "description": self.description,
            "lineEstimate": self.line_budget,
            "priority": self.priority,
        }


@dataclass
class ValidationResult:
    passed: bool
    category: str = ""
    explanation: str = ""
    line: int | None = None
    pattern: str = ""
    fix_suggestion: str = ""
    severity: str = "error"     # "error" retried, "policy" fatal

    @property
    def is_policy(self):
        return not self.passed and self.severity == "policy"

    def to_healing_context(self, failed_code):
        return {
            "errorType": self.category,
            "errorMessage": self.explanation,
            "location": f"line {self.line}" if self.line else "unknown",
            "failedCode": failed_code,
            "fixSuggestion": self.fix_suggestion,
        }


@dataclass
class GeneratedFile:
    path: str
    content: str
    validation: ValidationResult

    @property
    def line_count(self):
        if not self.content:
            return 0
        return len(self.content.split("\n"))


@dataclass
class PipelineRun:
    id: str
    request: GenerationRequest
    stage: str = PLANNING
    manifest: list[FileManifestEntry] = field(default_factory=list)
    files: list[GeneratedFile] = field(default_factory=list)
    complexity: str = ""
    plan: dict = field(default_factory=dict)
    credits_reserved: int = 0
    debited: bool = False
    cancelled: bool = False
    attempts: int = 0
    policy_violations: list[dict] = field(default_factory=list)

    def put_file(self, generated):
        """Add or replace the entry for generated.path. Never merges."""
        self.files = [f for f in self.files if f.path != generated.path]
        self.files.append(generated)


@dataclass
class CreditLedgerEntry:
    user_id: str
    amount: int         # negative for debits, positive for refunds
    reason: str
    run_id: str


# Client-side steps (UI names)
CLIENT_IDLE = "idle"
CLIENT_ARCHITECTING = "architecting"
CLIENT_BUILDING = "building"
CLIENT_LINTING = "linting"
CLIENT_HEALING = "healing"
CLIENT_DONE = "done"
CLIENT_ERROR = "error"


@dataclass
class ClientPipelineState:
    run_id: str | None = None
    stage: str = CLIENT_IDLE
    logs: list[str] = field(default_factory=list)
    plan: dict | None = None
    last_generated_code: str = ""
    files: list[dict] = field(default_factory=list)
    locked_project_id: str | None = None
    error: str | None = None
    retryable: bool = False
    is_running: bool = False
    credits_used: int = 0
