"""
Runtime domain verification orchestrator.

verify-and-bind runs strictly in order:

  normalize domain → sanitize probe headers → require API key     (stage: rejected)
  DNS + CNAME → TLS                                              (stage: preflight_failed, nothing stored)
  store pending snapshot → bid probe                             (stage: probe_failed, binding stays pending)
  store verified snapshot                                        (stage: bound)

Every outcome is returned as a response body; verification failures never
raise out of this module.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from mediation_edge.config import Settings
from mediation_edge.logging_config import current_request_id, tenant_id_ctx
from mediation_edge.middleware.metrics import record_probe_result
from mediation_edge.models.runtime_binding import (
    BIND_STATUS_FAILED,
    BIND_STATUS_PENDING,
    BIND_STATUS_UNBOUND,
    BIND_STATUS_VERIFIED,
    RuntimeBinding,
    utc_now_iso,
)
from mediation_edge.services.binding_store import (
    BindingStore,
    derive_tenant_id,
    hash_api_key,
    normalize_authorization,
)
from mediation_edge.services.domain_normalizer import normalize_runtime_domain
from mediation_edge.services.failures import (
    AUTH_401_403,
    CNAME_MISMATCH,
    EGRESS_BLOCKED,
    LANDING_URL_MISSING,
    PROBE_HEADERS_INVALID,
    RUNTIME_DOMAIN_NOT_BOUND,
    Failure,
    ProbeError,
)
from mediation_edge.services.probes import (
    BidProber,
    DnsResolver,
    ProbeResult,
    TlsDialer,
    check_dns,
    check_tls,
    decode_probe_headers,
    encode_probe_headers,
    sanitize_probe_headers,
)

logger = logging.getLogger("mediation.verification")

STAGE_REJECTED = "rejected"
STAGE_PREFLIGHT_FAILED = "preflight_failed"
STAGE_PROBE_FAILED = "probe_failed"
STAGE_BOUND = "bound"

# Keep a short history of probe outcomes for the dashboard.
_MAX_DIAGNOSTICS = 5


@dataclass
class VerificationChecks:
    dns_ok: bool = False
    cname_ok: bool = False
    tls_ok: bool = False
    connect_ok: bool = False
    auth_ok: bool = False
    bid_ok: bool = False
    landing_url_ok: bool = False

    def apply_probe(self, result: ProbeResult) -> None:
        reached = result.http_status is not None
        self.auth_ok = result.ok or (reached and result.code != AUTH_401_403)
        self.bid_ok = result.ok or result.code == LANDING_URL_MISSING
        self.landing_url_ok = result.ok and bool(result.landing_url)

    def to_dict(self) -> Dict[str, bool]:
        return {
            "dnsOk": self.dns_ok,
            "cnameOk": self.cname_ok,
            "tlsOk": self.tls_ok,
            "connectOk": self.connect_ok,
            "authOk": self.auth_ok,
            "bidOk": self.bid_ok,
            "landingUrlOk": self.landing_url_ok,
        }


def decide_final_status(server: ProbeResult, browser: Optional[ProbeResult]) -> Tuple[str, Optional[str]]:
    """
    Combine server and browser probe outcomes into ``(status, failure_code)``.

    A browser success next to a server failure points at a network restriction
    on the server side, not at the customer's runtime.
    """
    if server.ok:
        return BIND_STATUS_VERIFIED, None
    if browser is not None and browser.ok:
        return BIND_STATUS_PENDING, EGRESS_BLOCKED
    if server.code == PROBE_HEADERS_INVALID:
        return BIND_STATUS_FAILED, server.code
    return BIND_STATUS_PENDING, server.code


def _with_diagnostics(binding: Optional[RuntimeBinding], *results: ProbeResult) -> list:
    history = list(binding.probe_diagnostics) if binding else []
    entries = [dict(r.to_dict(), at=utc_now_iso()) for r in results]
    return (entries + history)[:_MAX_DIAGNOSTICS]


class RuntimeVerifier:
    def __init__(
        self,
        store: BindingStore,
        dns_resolver: DnsResolver,
        tls_dialer: TlsDialer,
        prober: BidProber,
        settings: Settings,
    ):
        self.store = store
        self.dns_resolver = dns_resolver
        self.tls_dialer = tls_dialer
        self.prober = prober
        self.settings = settings

    # ── helpers ──

    def _identity(self, authorization: Optional[str]) -> Tuple[str, str]:
        normalized = normalize_authorization(authorization)
        if not normalized:
            return "", ""
        tenant_id = derive_tenant_id(hash_api_key(normalized), self.settings.TENANT_ID_EPOCH)
        tenant_id_ctx.set(tenant_id)
        return normalized, tenant_id

    def _placement(self, placement_id: Any, binding: Optional[RuntimeBinding] = None) -> str:
        requested = placement_id if isinstance(placement_id, (str, int)) and not isinstance(placement_id, bool) else ""
        return (
            str(requested).strip()
            or (binding.placement_id if binding else "")
            or self.settings.DEFAULT_PLACEMENT_ID
        )

    def _placement_defaults(self, placement_id: str) -> Dict[str, str]:
        return {"placementId": placement_id, "environment": self.settings.DEFAULT_ENVIRONMENT}

    async def _existing_status(self, authorization: str, tenant_id: str) -> str:
        if not authorization:
            return BIND_STATUS_UNBOUND
        binding = await self.store.get(authorization, tenant_id)
        return binding.bind_status if binding else BIND_STATUS_UNBOUND

    def _verify_response(
        self,
        *,
        status: str,
        stage: str,
        runtime_base_url: str,
        checks: VerificationChecks,
        tenant_id: str,
        bind_status: str,
        placement_id: str,
        failure: Optional[Failure] = None,
        probe_result: Optional[ProbeResult] = None,
        landing_url_sample: str = "",
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": status,
            "bindStage": stage,
            "runtimeBaseUrl": runtime_base_url,
            "checks": checks.to_dict(),
            "requestId": current_request_id(),
            "nextActions": failure.next_actions if failure else [],
            "tenantId": tenant_id,
            "bindStatus": bind_status,
            "placementDefaults": self._placement_defaults(placement_id),
        }
        if failure:
            body.update(failure.codes())
            body["detail"] = failure.detail
        if probe_result:
            body["probeResult"] = probe_result.to_dict()
        if landing_url_sample:
            body["landingUrlSample"] = landing_url_sample
        return body

    # ── verify-and-bind ──

    async def verify_and_bind(
        self,
        authorization: Optional[str],
        domain: Any,
        placement_id: Any = None,
        probe_headers: Any = None,
    ) -> Dict[str, Any]:
        auth, tenant_id = self._identity(authorization)
        placement = self._placement(placement_id)
        checks = VerificationChecks()

        async def rejected(failure: Failure, runtime_base_url: str = "") -> Dict[str, Any]:
            record_probe_result(STAGE_REJECTED, failure.code)
            logger.info("verify-and-bind rejected: %s %s", failure.code, failure.detail)
            return self._verify_response(
                status=BIND_STATUS_FAILED,
                stage=STAGE_REJECTED,
                runtime_base_url=runtime_base_url,
                checks=checks,
                tenant_id=tenant_id,
                bind_status=await self._existing_status(auth, tenant_id),
                placement_id=placement,
                failure=failure,
            )

        normalized = normalize_runtime_domain(domain)
        if not normalized.ok:
            return await rejected(Failure(CNAME_MISMATCH, f"{domain!r} is not a usable public HTTPS domain"))
        runtime_base_url = normalized.runtime_base_url

        try:
            headers = sanitize_probe_headers(
                probe_headers,
                max_count=self.settings.PROBE_HEADERS_MAX_COUNT,
                max_bytes=self.settings.PROBE_HEADERS_MAX_BYTES,
            )
        except ProbeError as e:
            return await rejected(e.failure, runtime_base_url)

        if not auth:
            return await rejected(Failure(AUTH_401_403, "Authorization: Bearer <api key> is required"), runtime_base_url)

        # Pre-flight checks are stateless: nothing is stored when they fail.
        try:
            dns_check = await check_dns(
                normalized.hostname,
                self.dns_resolver,
                gateway_hostname=self.settings.RUNTIME_GATEWAY_HOSTNAME,
                require_gateway_cname=self.settings.RUNTIME_REQUIRE_GATEWAY_CNAME,
                timeout=self.settings.TLS_TIMEOUT_SECONDS,
            )
            checks.dns_ok, checks.cname_ok = dns_check.dns_ok, dns_check.cname_ok
            tls_check = await check_tls(normalized.hostname, self.tls_dialer, timeout=self.settings.TLS_TIMEOUT_SECONDS)
            checks.tls_ok, checks.connect_ok = tls_check.tls_ok, tls_check.connect_ok
        except ProbeError as e:
            record_probe_result(STAGE_PREFLIGHT_FAILED, e.code)
            logger.info("Pre-flight failed for %s: %s", runtime_base_url, e)
            return self._verify_response(
                status=BIND_STATUS_FAILED,
                stage=STAGE_PREFLIGHT_FAILED,
                runtime_base_url=runtime_base_url,
                checks=checks,
                tenant_id=tenant_id,
                bind_status=await self._existing_status(auth, tenant_id),
                placement_id=placement,
                failure=e.failure,
                probe_result=ProbeResult.from_error(e),
            )

        existing = await self.store.get(auth, tenant_id)
        now = utc_now_iso()
        pending = RuntimeBinding(
            key_hash=hash_api_key(auth),
            tenant_id=(existing.tenant_id if existing else "") or tenant_id,
            runtime_base_url=runtime_base_url,
            placement_id=placement,
            bind_status=BIND_STATUS_PENDING,
            last_probe_at=now,
            last_probe_code=existing.last_probe_code if existing else "",
            last_probe_http_status=existing.last_probe_http_status if existing else None,
            probe_headers_encrypted=encode_probe_headers(headers),
            probe_diagnostics=list(existing.probe_diagnostics) if existing else [],
            created_at=(existing.created_at if existing else "") or now,
            updated_at=now,
        )
        pending = await self.store.save(auth, pending)

        try:
            result = await self.prober.probe(runtime_base_url, auth, placement, headers)
        except ProbeError as e:
            result = ProbeResult.from_error(e)
            checks.apply_probe(result)
            record_probe_result(STAGE_PROBE_FAILED, e.code)
            logger.info("Bid probe failed for %s: %s", runtime_base_url, e)
            binding = await self.store.save(auth, pending.evolve(
                last_probe_at=utc_now_iso(),
                last_probe_code=e.code,
                last_probe_http_status=result.http_status,
                probe_diagnostics=_with_diagnostics(pending, result),
            ))
            return self._verify_response(
                status=BIND_STATUS_PENDING,
                stage=STAGE_PROBE_FAILED,
                runtime_base_url=runtime_base_url,
                checks=checks,
                tenant_id=binding.tenant_id,
                bind_status=binding.bind_status,
                placement_id=placement,
                failure=e.failure,
                probe_result=result,
            )

        checks.apply_probe(result)
        verified_at = utc_now_iso()
        binding = await self.store.save(auth, pending.evolve(
            bind_status=BIND_STATUS_VERIFIED,
            verified_at=verified_at,
            last_probe_at=verified_at,
            last_probe_code=result.code,
            last_probe_http_status=result.http_status,
            probe_diagnostics=_with_diagnostics(pending, result),
        ))
        record_probe_result(STAGE_BOUND, result.code)
        logger.info("Runtime %s verified for tenant %s", runtime_base_url, binding.tenant_id)
        return self._verify_response(
            status=BIND_STATUS_VERIFIED,
            stage=STAGE_BOUND,
            runtime_base_url=runtime_base_url,
            checks=checks,
            tenant_id=binding.tenant_id,
            bind_status=binding.bind_status,
            placement_id=placement,
            probe_result=result,
            landing_url_sample=result.landing_url,
        )

    # ── re-probe ──

    async def reprobe(
        self,
        authorization: Optional[str],
        domain: Any = None,
        placement_id: Any = None,
        probe_headers: Any = None,
        browser_probe: Any = None,
        run_browser_probe: Any = None,
    ) -> Dict[str, Any]:
        """
        Re-run only the bid probe against the bound (or given) runtime.

        The stored binding is updated when it exists and the probed URL is the
        bound one; another domain is probed for diagnostics only, since DNS and
        TLS were not checked for it.
        """
        auth, tenant_id = self._identity(authorization)
        binding = await self.store.get(auth, tenant_id) if auth else None
        placement = self._placement(placement_id, binding)
        browser = ProbeResult.from_client(browser_probe) if run_browser_probe is not False else None

        def response(
            final_status: str,
            runtime_base_url: str,
            failure: Optional[Failure],
            server: ProbeResult,
            bind_status: str,
        ) -> Dict[str, Any]:
            body: Dict[str, Any] = {
                "status": final_status,
                "finalStatus": final_status,
                "runtimeBaseUrl": runtime_base_url,
                "serverProbe": server.to_dict(),
                "probeResult": server.to_dict(),
                "nextActions": failure.next_actions if failure else [],
                "bindStatus": bind_status,
                "placementDefaults": self._placement_defaults(placement),
                "requestId": current_request_id(),
                "tenantId": (binding.tenant_id if binding else "") or tenant_id,
            }
            if browser is not None:
                body["browserProbe"] = browser.to_dict()
            if failure:
                body.update(failure.codes())
                body["detail"] = failure.detail
            return body

        def not_probed(failure: Failure, runtime_base_url: str = "") -> Dict[str, Any]:
            record_probe_result(STAGE_REJECTED, failure.code)
            server = ProbeResult(source="server", ok=False, code=failure.code, detail=failure.detail)
            return response(
                BIND_STATUS_FAILED,
                runtime_base_url,
                failure,
                server,
                binding.bind_status if binding else BIND_STATUS_UNBOUND,
            )

        if not auth:
            return not_probed(Failure(AUTH_401_403, "Authorization: Bearer <api key> is required"))

        if domain:
            normalized = normalize_runtime_domain(domain)
            if not normalized.ok:
                return not_probed(Failure(CNAME_MISMATCH, f"{domain!r} is not a usable public HTTPS domain"))
            target = normalized.runtime_base_url
        elif binding and binding.runtime_base_url:
            target = binding.runtime_base_url
        else:
            return not_probed(Failure(RUNTIME_DOMAIN_NOT_BOUND, "no runtime domain is bound to this API key"))

        if probe_headers is not None:
            try:
                headers = sanitize_probe_headers(
                    probe_headers,
                    max_count=self.settings.PROBE_HEADERS_MAX_COUNT,
                    max_bytes=self.settings.PROBE_HEADERS_MAX_BYTES,
                )
            except ProbeError as e:
                return not_probed(e.failure, target)
        else:
            headers = decode_probe_headers(binding.probe_headers_encrypted) if binding else {}

        try:
            server = await self.prober.probe(target, auth, placement, headers)
        except ProbeError as e:
            server = ProbeResult.from_error(e)
            logger.info("Re-probe failed for %s: %s", target, e)

        final_status, final_code = decide_final_status(server, browser)
        record_probe_result("reprobe", final_code or server.code)
        failure = None
        if final_code:
            detail = server.detail
            if final_code != server.code:
                detail = f"browser probe succeeded but server probe failed ({server.code}): {server.detail}"
            failure = Failure(final_code, detail, http_status=server.http_status)

        bind_status = binding.bind_status if binding else BIND_STATUS_UNBOUND
        if binding is not None and target == binding.runtime_base_url:
            now = utc_now_iso()
            changes: Dict[str, Any] = {
                "bind_status": final_status,
                "placement_id": placement,
                "last_probe_at": now,
                "last_probe_code": final_code or server.code,
                "last_probe_http_status": server.http_status,
                "probe_diagnostics": _with_diagnostics(binding, *([server, browser] if browser else [server])),
            }
            if probe_headers is not None:
                changes["probe_headers_encrypted"] = encode_probe_headers(headers)
            if final_status == BIND_STATUS_VERIFIED:
                changes["verified_at"] = now
            saved = await self.store.save(auth, binding.evolve(**changes))
            bind_status = saved.bind_status

        return response(final_status, target, failure, server, bind_status)
