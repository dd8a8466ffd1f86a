"""
Access decision orchestration.

``check_access`` runs, in order: rate limiting, request validation, the
decision cache, then RBAC, ABAC (when enabled for the scope) and the
policy statements. It always returns an ``AccessDecision``: semantic
denials, configuration errors and backend failures all deny, and are
logged at different levels so they can be told apart.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from accessgate.core.audit import AuditLogEntry, AuditLogPipeline
from accessgate.core.cache import (
    DecisionCache,
    abac_key,
    decision_key,
    fingerprint,
    policies_key,
    rbac_key,
    subject_roles_key,
)
from accessgate.core.config import Settings, get_settings
from accessgate.core.logging import decision_context, get_logger
from accessgate.core.rate_limit import RateLimiter
from accessgate.modules.access.abac import AbacEvaluator
from accessgate.modules.access.attribute_schema import AttributeRegistry
from accessgate.modules.access.attributes import AttributeBag
from accessgate.modules.access.conditions import ConditionEvaluator
from accessgate.modules.access.errors import (
    BackendUnavailableError,
    ConfigurationError,
    InvalidPermissionError,
    InvalidRequestAttributesError,
)
from accessgate.modules.access.policy_engine import PolicyEvaluator
from accessgate.modules.access.rbac import RbacResolver, parse_permission
from accessgate.modules.access.repository import AccessConfigRepository
from accessgate.modules.access.schemas import (
    AbacConfig,
    AccessDecision,
    AccessRequest,
    DecisionStage,
    Effect,
    Policy,
    RbacConfig,
)
from accessgate.modules.views.refresher import MaterializedViewRefresher

logger = get_logger(__name__)

REASON_RATE_LIMITED = "Rate limit exceeded"
REASON_INVALID_REQUEST = "Invalid request attributes"
REASON_RBAC_DENIED = "RBAC denied"
REASON_ABAC_DENIED = "ABAC denied"
REASON_ADMIN_BYPASS = "Access allowed by administrator wildcard"
REASON_CONFIGURATION = "Authorization configuration error"
REASON_BACKEND = "Authorization backend unavailable"
REASON_NONE_GRANTED = "None of the required permissions are granted"
REASON_ALL_GRANTED = "All required permissions are granted"

_CACHEABLE_STAGES = frozenset(
    {DecisionStage.RBAC, DecisionStage.ABAC, DecisionStage.POLICY, DecisionStage.ADMIN_BYPASS}
)


@dataclass
class ScopeSnapshot:
    """Configuration a single decision is evaluated against."""

    rbac: RbacConfig
    abac: AbacConfig
    policies: list[Policy]
    subject_roles: list[str]


class AccessControlEngine:
    """Evaluates access requests for every scope."""

    def __init__(
        self,
        repository: AccessConfigRepository,
        *,
        cache: DecisionCache,
        rate_limiter: RateLimiter | None = None,
        audit: AuditLogPipeline | None = None,
        views: MaterializedViewRefresher | None = None,
        attribute_registry: AttributeRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._views = views
        self.attribute_registry = attribute_registry or AttributeRegistry()
        self._conditions = ConditionEvaluator(max_depth=self._settings.authz_condition_max_depth)
        self._policies = PolicyEvaluator(self._conditions)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check_access(self, request: AccessRequest) -> AccessDecision:
        return await self._decide(request, admit=True)

    async def _decide(self, request: AccessRequest, *, admit: bool) -> AccessDecision:
        request_id = uuid4().hex
        with decision_context(
            request_id=request_id, subject_id=request.subject.id, scope_id=request.scope_id
        ):
            return await self._check_access(request, request_id, admit=admit)

    async def _admit(self, request: AccessRequest) -> bool:
        if self._rate_limiter is None:
            return True
        return await self._rate_limiter.admit(request.subject.id, request.scope_id)

    async def _check_access(self, request: AccessRequest, request_id: str, *, admit: bool) -> AccessDecision:
        subject_id = request.subject.id
        scope_id = request.scope_id

        if admit and not await self._admit(request):
            return self._finish(request, request_id, False, REASON_RATE_LIMITED, DecisionStage.RATE_LIMIT)

        bag = AttributeBag.from_request(request)
        try:
            parse_permission(request.action)
            if self._settings.authz_validate_request_attributes:
                self.attribute_registry.validate(request, bag)
        except (InvalidRequestAttributesError, InvalidPermissionError) as exc:
            logger.info("access_request_invalid", error=str(exc))
            return self._finish(request, request_id, False, REASON_INVALID_REQUEST, DecisionStage.VALIDATION)

        key = decision_key(scope_id, subject_id, self._fingerprint(request))
        cached = await self._cache.get(key)
        if cached is not None:
            return self._finish(
                request,
                request_id,
                bool(cached["allowed"]),
                cached["reason"],
                DecisionStage(cached["stage"]),
                matched_policies=list(cached.get("matched_policies", [])),
                cached=True,
            )

        try:
            decision = await self._evaluate(request, bag, request_id)
        except ConfigurationError as exc:
            logger.error("authz_configuration_error", action=request.action, error=str(exc))
            return self._finish(request, request_id, False, REASON_CONFIGURATION, DecisionStage.CONFIGURATION)
        except BackendUnavailableError as exc:
            logger.warning("authz_backend_unavailable", error=str(exc.__cause__ or exc))
            return self._finish(request, request_id, False, REASON_BACKEND, DecisionStage.BACKEND)

        if decision.stage in _CACHEABLE_STAGES:
            await self._cache.set(
                key,
                decision.model_dump(mode="json", include={"allowed", "reason", "stage", "matched_policies"}),
            )
        return decision

    async def has_permission(self, subject_id: str, scope_id: str, permission: str) -> bool:
        """RBAC-only check against the subject's stored role assignments."""
        required = parse_permission(permission)
        try:
            rbac = await self._load_rbac(scope_id)
            roles = await self._load_subject_roles(subject_id, scope_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("authz_backend_unavailable", scope_id=scope_id, error=str(exc))
            return False
        return RbacResolver(rbac).has_permission(roles, required)

    async def _admit_batch(self, request: AccessRequest) -> AccessDecision | None:
        """Count a multi-action check once; returns the rate-limit denial when over the limit."""
        if await self._admit(request):
            return None
        request_id = uuid4().hex
        with decision_context(
            request_id=request_id, subject_id=request.subject.id, scope_id=request.scope_id
        ):
            return self._finish(request, request_id, False, REASON_RATE_LIMITED, DecisionStage.RATE_LIMIT)

    async def check_any(self, request: AccessRequest, actions: Iterable[str]) -> AccessDecision:
        """Allowed as soon as one of ``actions`` is allowed."""
        limited = await self._admit_batch(request)
        if limited is not None:
            return limited
        last: AccessDecision | None = None
        for action in actions:
            last = await self._decide(request.model_copy(update={"action": action}), admit=False)
            if last.allowed:
                return last
        return AccessDecision(
            allowed=False,
            reason=REASON_NONE_GRANTED,
            effect=Effect.DENY,
            stage=last.stage if last is not None else DecisionStage.VALIDATION,
            request_id=last.request_id if last is not None else uuid4().hex,
        )

    async def check_all(self, request: AccessRequest, actions: Iterable[str]) -> AccessDecision:
        """Allowed only when every one of ``actions`` is allowed."""
        limited = await self._admit_batch(request)
        if limited is not None:
            return limited
        decisions = {
            action: await self._decide(request.model_copy(update={"action": action}), admit=False)
            for action in actions
        }
        denied = [action for action, decision in decisions.items() if not decision.allowed]
        matched: dict[str, None] = {}
        for decision in decisions.values():
            for policy_id in decision.matched_policies:
                matched.setdefault(policy_id, None)
        if not decisions or denied:
            reason = f"Missing permissions: {', '.join(denied)}" if denied else REASON_NONE_GRANTED
            stage = decisions[denied[0]].stage if denied else DecisionStage.VALIDATION
            return AccessDecision(
                allowed=False,
                reason=reason,
                effect=Effect.DENY,
                stage=stage,
                matched_policies=list(matched),
                request_id=uuid4().hex,
            )
        return AccessDecision(
            allowed=True,
            reason=REASON_ALL_GRANTED,
            effect=Effect.ALLOW,
            stage=DecisionStage.POLICY,
            matched_policies=list(matched),
            request_id=uuid4().hex,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _evaluate(self, request: AccessRequest, bag: AttributeBag, request_id: str) -> AccessDecision:
        snapshot = await self._load_snapshot(request)
        roles = list(dict.fromkeys([*request.subject.roles, *snapshot.subject_roles]))

        rbac = RbacResolver(snapshot.rbac)
        if not rbac.has_permission(roles, request.action):
            return self._finish(request, request_id, False, REASON_RBAC_DENIED, DecisionStage.RBAC)

        if self._settings.authz_admin_wildcard_bypass and rbac.is_admin(roles):
            return self._finish(request, request_id, True, REASON_ADMIN_BYPASS, DecisionStage.ADMIN_BYPASS)

        if snapshot.abac.enabled:
            abac = AbacEvaluator(snapshot.abac)
            if not abac.evaluate(
                roles,
                bag.layer("subject"),
                bag.layer("resource"),
                bag.layer("environment"),
                bag.layer("context"),
            ):
                return self._finish(request, request_id, False, REASON_ABAC_DENIED, DecisionStage.ABAC)

        result = self._policies.evaluate(snapshot.policies, request.action, request.resource.id, bag)
        return self._finish(
            request,
            request_id,
            result.allowed,
            result.reason,
            DecisionStage.POLICY,
            matched_policies=result.matched_policies,
        )

    async def _load_snapshot(self, request: AccessRequest) -> ScopeSnapshot:
        scope_id = request.scope_id
        try:
            return ScopeSnapshot(
                rbac=await self._load_rbac(scope_id),
                abac=await self._load_abac(scope_id),
                policies=await self._load_policies(scope_id),
                subject_roles=await self._load_subject_roles(request.subject.id, scope_id),
            )
        except ConfigurationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendUnavailableError(f"Failed to load configuration for scope {scope_id!r}") from exc

    async def _load_rbac(self, scope_id: str) -> RbacConfig:
        cached = await self._cache.get(rbac_key(scope_id))
        if cached is not None:
            return RbacConfig.model_validate(cached)
        config = await self._repository.load_rbac_config(scope_id)
        await self._cache.set(rbac_key(scope_id), config.model_dump(mode="json"))
        return config

    async def _load_abac(self, scope_id: str) -> AbacConfig:
        cached = await self._cache.get(abac_key(scope_id))
        if cached is not None:
            return AbacConfig.model_validate(cached)
        config = await self._repository.load_abac_config(scope_id)
        await self._cache.set(abac_key(scope_id), config.model_dump(mode="json"))
        return config

    async def _load_policies(self, scope_id: str) -> list[Policy]:
        key = policies_key(scope_id or None)
        cached = await self._cache.get(key)
        if cached is not None:
            return [Policy.model_validate(item) for item in cached]
        policies = await self._repository.load_policies(scope_id or None)
        await self._cache.set(key, [policy.model_dump(mode="json") for policy in policies])
        return policies

    async def _load_subject_roles(self, subject_id: str, scope_id: str) -> list[str]:
        key = subject_roles_key(scope_id, subject_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return list(cached)
        roles = None
        if self._views is not None:
            roles = await self._views.get_subject_roles(subject_id, scope_id)
        if roles is None:
            roles = await self._repository.get_subject_roles(subject_id, scope_id)
        await self._cache.set(key, roles)
        return roles

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fingerprint(request: AccessRequest) -> str:
        environment = request.environment.model_dump(mode="json", exclude={"timestamp"})
        payload: dict[str, Any] = {
            "action": request.action,
            "subject": request.subject.model_dump(mode="json", exclude={"last_authenticated"}),
            "resource": request.resource.model_dump(mode="json"),
            "environment": environment,
            "context": request.context,
        }
        return fingerprint(payload)

    def _finish(
        self,
        request: AccessRequest,
        request_id: str,
        allowed: bool,
        reason: str,
        stage: DecisionStage,
        *,
        matched_policies: list[str] | None = None,
        cached: bool = False,
    ) -> AccessDecision:
        decision = AccessDecision(
            allowed=allowed,
            reason=reason,
            effect=Effect.ALLOW if allowed else Effect.DENY,
            stage=stage,
            matched_policies=matched_policies or [],
            request_id=request_id,
            cached=cached,
        )
        if not allowed:
            logger.info(
                "access_denied",
                action=request.action,
                resource_id=request.resource.id,
                stage=stage.value,
                reason=reason,
            )
        if self._audit is not None:
            self._audit.submit(
                AuditLogEntry(
                    request_id=request_id,
                    kind="decision",
                    subject_id=request.subject.id,
                    scope_id=request.scope_id or None,
                    action=request.action,
                    resource_type=request.resource.type,
                    resource_id=request.resource.id,
                    allowed=allowed,
                    reason=reason,
                    stage=stage.value,
                    matched_policies=decision.matched_policies,
                    details={"cached": cached} if cached else None,
                )
            )
        return decision
