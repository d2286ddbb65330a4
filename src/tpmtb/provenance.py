"""
Typed views over SLSA v1 provenance statements.

Only the fields checked by the verification policy are decoded; the
rest of the predicate is kept as raw JSON.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

IN_TOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"
SLSA_PROVENANCE_V1 = "https://slsa.dev/provenance/v1"


@dataclass
class Workflow:
    repository: str = ""
    path: str = ""
    ref: str = ""


@dataclass
class ResourceDescriptor:
    uri: str = ""
    digest: Dict[str, str] = field(default_factory=dict)

    @property
    def git_commit(self) -> str:
        return self.digest.get("gitCommit", "")


@dataclass
class Subject:
    name: str = ""
    digest: Dict[str, str] = field(default_factory=dict)


@dataclass
class Statement:
    """An in-toto statement carrying a SLSA provenance predicate."""
    type: str
    predicate_type: str
    subjects: List[Subject]
    workflow: Workflow
    resolved_dependencies: List[ResourceDescriptor]
    builder_id: str = ""
    predicate: Dict[str, Any] = field(default_factory=dict)

    @property
    def git_commit(self) -> str:
        """gitCommit of the first resolved dependency, or an empty string."""
        if not self.resolved_dependencies:
            return ""
        return self.resolved_dependencies[0].git_commit

    def has_subject_digest(self, sha256_hex: str) -> bool:
        wanted = sha256_hex.lower()
        return any(s.digest.get("sha256", "").lower() == wanted for s in self.subjects)


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _digests(value: Any) -> Dict[str, str]:
    """Digest set with non-string values dropped."""
    return {k: v for k, v in _dict(value).items() if isinstance(v, str)}


def parse_statement(payload: bytes) -> Statement:
    """
    Decode a DSSE payload into a Statement.

    Raises:
        ValueError: If the payload is not a JSON object
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"invalid in-toto statement: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("invalid in-toto statement: expected a JSON object")

    predicate = _dict(data.get("predicate"))
    build_definition = _dict(predicate.get("buildDefinition"))
    workflow = _dict(_dict(build_definition.get("externalParameters")).get("workflow"))
    builder = _dict(_dict(predicate.get("runDetails")).get("builder"))

    return Statement(
        type=data.get("_type") or "",
        predicate_type=data.get("predicateType") or "",
        subjects=[
            Subject(name=_dict(s).get("name") or "", digest=_digests(_dict(s).get("digest")))
            for s in _list(data.get("subject"))
        ],
        workflow=Workflow(
            repository=workflow.get("repository") or "",
            path=workflow.get("path") or "",
            ref=workflow.get("ref") or "",
        ),
        resolved_dependencies=[
            ResourceDescriptor(uri=_dict(d).get("uri") or "", digest=_digests(_dict(d).get("digest")))
            for d in _list(build_definition.get("resolvedDependencies"))
        ],
        builder_id=builder.get("id") or "",
        predicate=predicate,
    )
