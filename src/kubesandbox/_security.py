# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Pod Security Standards validation and hardening.

Validation and hardening are pure functions over one rule table. Each rule
knows how to check a pod spec and, where a compliant value can be injected
without discarding caller intent, how to fix it. Specs are plain dicts in
the Kubernetes API's camelCase shape, either a full Pod manifest or a bare
PodSpec.

Hardening deliberately leaves three things alone: ``privileged: true``,
added dangerous capabilities, and hostPath volumes on sensitive paths.
Those stay visible as violations.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from kubesandbox._types import PssProfile, PssValidationResult
from kubesandbox.exceptions import PodSecurityViolationError

if TYPE_CHECKING:
    from kubesandbox._audit import AuditLogger

logger = logging.getLogger(__name__)

DANGEROUS_CAPABILITIES = frozenset({"ALL", "SYS_ADMIN", "NET_ADMIN", "SYS_PTRACE", "SYS_MODULE"})
SENSITIVE_HOST_PATHS = ("/etc", "/var/run", "/proc", "/sys", "/dev")
ALLOWED_SECCOMP_TYPES = frozenset({"RuntimeDefault", "Localhost"})
HOST_NAMESPACE_FIELDS = ("hostNetwork", "hostPID", "hostIPC")

PodSpec = dict[str, Any]


def _pod_spec(manifest: dict[str, Any] | None) -> PodSpec | None:
    """Return the PodSpec inside a manifest, or the manifest if it is one."""
    if not isinstance(manifest, dict):
        return None
    if "containers" in manifest:
        return manifest
    spec = manifest.get("spec")
    return spec if isinstance(spec, dict) else None


def _containers(spec: PodSpec) -> Iterator[tuple[str, dict[str, Any]]]:
    for key, label in (("initContainers", "init container"), ("containers", "container")):
        for container in spec.get(key) or []:
            yield f"{label} '{container.get('name', '?')}'", container


def _security_context(obj: dict[str, Any], *, create: bool = False) -> dict[str, Any]:
    ctx = obj.get("securityContext")
    if ctx is None:
        ctx = {}
        if create:
            obj["securityContext"] = ctx
    return ctx


# ---------------------------------------------------------------------------
# Rule checks
# ---------------------------------------------------------------------------


def _check_host_namespaces(spec: PodSpec) -> list[str]:
    return [f"{field} must be false" for field in HOST_NAMESPACE_FIELDS if spec.get(field)]


def _fix_host_namespaces(spec: PodSpec) -> None:
    for field in HOST_NAMESPACE_FIELDS:
        if spec.get(field):
            spec[field] = False


def _check_privileged(spec: PodSpec) -> list[str]:
    return [
        f"{label}: privileged must be false"
        for label, c in _containers(spec)
        if _security_context(c).get("privileged") is True
    ]


def _check_dangerous_capabilities(spec: PodSpec) -> list[str]:
    problems = []
    for label, c in _containers(spec):
        added = (_security_context(c).get("capabilities") or {}).get("add") or []
        normalized = {cap.upper().removeprefix("CAP_") for cap in added}
        bad = sorted(normalized & DANGEROUS_CAPABILITIES)
        if bad:
            problems.append(f"{label}: must not add capabilities {', '.join(bad)}")
    return problems


def _check_host_path_volumes(spec: PodSpec) -> list[str]:
    problems = []
    for volume in spec.get("volumes") or []:
        host_path = (volume.get("hostPath") or {}).get("path")
        if not host_path:
            continue
        normalized = host_path.rstrip("/") or "/"
        for sensitive in SENSITIVE_HOST_PATHS:
            if normalized == sensitive or normalized.startswith(sensitive + "/"):
                problems.append(
                    f"volume '{volume.get('name', '?')}': hostPath {host_path} is under {sensitive}"
                )
                break
    return problems


def _check_run_as_non_root(spec: PodSpec) -> list[str]:
    pod_level = _security_context(spec).get("runAsNonRoot")
    containers = list(_containers(spec))
    explicit_false = [
        f"{label}: runAsNonRoot must not be false"
        for label, c in containers
        if _security_context(c).get("runAsNonRoot") is False
    ]
    if explicit_false:
        return explicit_false
    if pod_level is True:
        return []
    if containers and all(_security_context(c).get("runAsNonRoot") is True for _, c in containers):
        return []
    return ["runAsNonRoot must be true at pod level or in every container"]


def _fix_run_as_non_root(spec: PodSpec) -> None:
    _security_context(spec, create=True)["runAsNonRoot"] = True
    for _, c in _containers(spec):
        ctx = _security_context(c)
        if ctx.get("runAsNonRoot") is False:
            ctx["runAsNonRoot"] = True


def _seccomp_type(obj: dict[str, Any]) -> str | None:
    return (_security_context(obj).get("seccompProfile") or {}).get("type")


def _check_seccomp(spec: PodSpec) -> list[str]:
    containers = list(_containers(spec))
    disallowed = [
        f"{label}: seccompProfile type {_seccomp_type(c)} is not allowed"
        for label, c in containers
        if _seccomp_type(c) is not None and _seccomp_type(c) not in ALLOWED_SECCOMP_TYPES
    ]
    if disallowed:
        return disallowed
    if _seccomp_type(spec) in ALLOWED_SECCOMP_TYPES:
        return []
    if containers and all(_seccomp_type(c) in ALLOWED_SECCOMP_TYPES for _, c in containers):
        return []
    return [
        "seccompProfile type must be RuntimeDefault or Localhost "
        "at pod level or in every container"
    ]


def _fix_seccomp(spec: PodSpec) -> None:
    pod_ctx = _security_context(spec, create=True)
    if _seccomp_type(spec) not in ALLOWED_SECCOMP_TYPES:
        pod_ctx["seccompProfile"] = {"type": "RuntimeDefault"}
    for _, c in _containers(spec):
        container_type = _seccomp_type(c)
        if container_type is not None and container_type not in ALLOWED_SECCOMP_TYPES:
            _security_context(c)["seccompProfile"] = {"type": "RuntimeDefault"}


def _check_allow_privilege_escalation(spec: PodSpec) -> list[str]:
    return [
        f"{label}: allowPrivilegeEscalation must be set to false"
        for label, c in _containers(spec)
        if _security_context(c).get("allowPrivilegeEscalation") is not False
    ]


def _fix_allow_privilege_escalation(spec: PodSpec) -> None:
    for _, c in _containers(spec):
        ctx = _security_context(c, create=True)
        if ctx.get("privileged") is True:
            continue
        ctx["allowPrivilegeEscalation"] = False


def _check_drop_all(spec: PodSpec) -> list[str]:
    return [
        f"{label}: capabilities.drop must include ALL"
        for label, c in _containers(spec)
        if "ALL" not in ((_security_context(c).get("capabilities") or {}).get("drop") or [])
    ]


def _fix_drop_all(spec: PodSpec) -> None:
    for _, c in _containers(spec):
        caps = _security_context(c, create=True).setdefault("capabilities", {})
        drop = list(caps.get("drop") or [])
        if "ALL" not in drop:
            drop.append("ALL")
        caps["drop"] = drop


@dataclass(frozen=True)
class _Rule:
    """A Pod Security Standards rule.

    ``enforced`` lists profiles where a finding is a violation; ``warned``
    lists profiles where it is only a warning.
    """

    name: str
    check: Callable[[PodSpec], list[str]]
    enforced: frozenset[PssProfile]
    warned: frozenset[PssProfile] = frozenset()
    fix: Callable[[PodSpec], None] | None = None


_BASELINE_AND_UP = frozenset({PssProfile.BASELINE, PssProfile.RESTRICTED})
_RESTRICTED = frozenset({PssProfile.RESTRICTED})

RULES: tuple[_Rule, ...] = (
    _Rule("host-namespaces", _check_host_namespaces, _BASELINE_AND_UP, fix=_fix_host_namespaces),
    _Rule("privileged", _check_privileged, _BASELINE_AND_UP),
    _Rule("capabilities-add", _check_dangerous_capabilities, _BASELINE_AND_UP),
    _Rule(
        "host-path-volumes",
        _check_host_path_volumes,
        _RESTRICTED,
        warned=frozenset({PssProfile.BASELINE}),
    ),
    _Rule("run-as-non-root", _check_run_as_non_root, _RESTRICTED, fix=_fix_run_as_non_root),
    _Rule("seccomp", _check_seccomp, _RESTRICTED, fix=_fix_seccomp),
    _Rule(
        "allow-privilege-escalation",
        _check_allow_privilege_escalation,
        _RESTRICTED,
        fix=_fix_allow_privilege_escalation,
    ),
    _Rule("capabilities-drop-all", _check_drop_all, _RESTRICTED, fix=_fix_drop_all),
)


def validate_pod_security(
    manifest: dict[str, Any] | None,
    profile: PssProfile | str = PssProfile.RESTRICTED,
) -> PssValidationResult:
    """Validate a pod manifest or PodSpec against a PSS profile.

    Pure: the input is never modified and equal inputs give equal results.
    """
    profile = PssProfile(profile)
    if profile is PssProfile.PRIVILEGED:
        return PssValidationResult(valid=True, profile=profile)

    spec = _pod_spec(manifest)
    if spec is None:
        return PssValidationResult(
            valid=False, profile=profile, violations=("Pod spec is missing",)
        )

    violations: list[str] = []
    warnings: list[str] = []
    for rule in RULES:
        if profile in rule.enforced:
            violations.extend(rule.check(spec))
        elif profile in rule.warned:
            warnings.extend(rule.check(spec))

    return PssValidationResult(
        valid=not violations,
        profile=profile,
        violations=tuple(violations),
        warnings=tuple(warnings),
    )


def ensure_restricted_pod_security(manifest: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``manifest`` hardened to pass the restricted profile.

    Only missing or non-compliant settings are changed; compliant caller
    values (Localhost seccomp profiles, extra dropped capabilities, harmless
    added capabilities, runAsUser) are preserved.
    """
    hardened = copy.deepcopy(manifest)
    spec = _pod_spec(hardened)
    if spec is None:
        return hardened
    for rule in RULES:
        if rule.fix is not None:
            rule.fix(spec)
    return hardened


class PodSecurityValidator:
    """Validates pod specs and records the outcome in the audit log.

    Example:
        ```python
        validator = PodSecurityValidator(audit)
        spec = validator.ensure_restricted(spec)
        validator.validate_or_raise(spec, pod_name="agentpane-p1-abcd1234")
        ```
    """

    def __init__(self, audit: AuditLogger | None = None) -> None:
        self._audit = audit

    def validate(
        self,
        manifest: dict[str, Any] | None,
        profile: PssProfile | str = PssProfile.RESTRICTED,
        *,
        pod_name: str | None = None,
        namespace: str | None = None,
    ) -> PssValidationResult:
        result = validate_pod_security(manifest, profile)
        if self._audit is not None:
            self._audit.log_pss_validation(result, pod_name=pod_name, namespace=namespace)
        for warning in result.warnings:
            logger.warning("Pod security warning for %s: %s", pod_name or "<spec>", warning)
        return result

    def validate_or_raise(
        self,
        manifest: dict[str, Any] | None,
        profile: PssProfile | str = PssProfile.RESTRICTED,
        *,
        pod_name: str | None = None,
        namespace: str | None = None,
    ) -> PssValidationResult:
        """Validate and raise PodSecurityViolationError on any violation."""
        result = self.validate(manifest, profile, pod_name=pod_name, namespace=namespace)
        if not result.valid:
            raise PodSecurityViolationError(
                f"Pod {pod_name or '<spec>'} violates the {result.profile} profile: "
                + "; ".join(result.violations),
                violations=list(result.violations),
                context={
                    "pod_name": pod_name,
                    "namespace": namespace,
                    "profile": result.profile.value,
                },
            )
        return result

    def ensure_restricted(self, manifest: dict[str, Any]) -> dict[str, Any]:
        return ensure_restricted_pod_security(manifest)
