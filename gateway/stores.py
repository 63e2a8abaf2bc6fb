"""Stores for gateway state shared between requests.

Holds client registrations, consent decisions, pending client codes, and
used state nonces. Code consumption and nonce recording are atomic
check-and-set operations: of any number of concurrent callers exactly one
wins.

MemoryStore serves a single process (tests, local development).
SupabaseStore serves multi-instance deployments.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from gateway.models import ClientRegistration, ConsentDecision, PendingCode

logger = logging.getLogger(__name__)


class GatewayStore(ABC):
    """Storage interface used by all gateway components."""

    # ---- client registrations ----

    @abstractmethod
    def put_client(self, client: ClientRegistration) -> None: ...

    @abstractmethod
    def get_client(self, client_id: str) -> Optional[ClientRegistration]: ...

    # ---- consent decisions ----

    @abstractmethod
    def put_consent(self, decision: ConsentDecision) -> None: ...

    @abstractmethod
    def get_consent(self, client_id: str, user_principal: str) -> Optional[ConsentDecision]: ...

    # ---- pending client codes ----

    @abstractmethod
    def put_pending_code(self, pending: PendingCode) -> None: ...

    @abstractmethod
    def get_pending_code(self, code_hash: str) -> Optional[PendingCode]: ...

    @abstractmethod
    def consume_pending_code(self, code_hash: str) -> bool:
        """Mark a code consumed. Returns True only for the first caller."""

    # ---- replay prevention ----

    @abstractmethod
    def record_nonce(self, nonce: str, expires_at: int) -> bool:
        """Record a one-time nonce. Returns False if it was already recorded."""


class MemoryStore(GatewayStore):
    """In-process store guarded by a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        # OAuth client registration (dynamic client registration)
        self.registered_clients: dict[str, ClientRegistration] = {}
        # (client_id, user_principal) -> consent decision
        self.consent_decisions: dict[tuple[str, str], ConsentDecision] = {}
        # sha256(client code) -> pending code
        self.pending_codes: dict[str, PendingCode] = {}
        # state nonce -> expiry
        self.used_nonces: dict[str, int] = {}

    def put_client(self, client: ClientRegistration) -> None:
        with self._lock:
            self.registered_clients[client.client_id] = client

    def get_client(self, client_id: str) -> Optional[ClientRegistration]:
        return self.registered_clients.get(client_id)

    def put_consent(self, decision: ConsentDecision) -> None:
        with self._lock:
            self.consent_decisions[(decision.client_id, decision.user_principal)] = decision

    def get_consent(self, client_id: str, user_principal: str) -> Optional[ConsentDecision]:
        return self.consent_decisions.get((client_id, user_principal))

    def put_pending_code(self, pending: PendingCode) -> None:
        with self._lock:
            self._purge_expired()
            self.pending_codes[pending.code_hash] = pending

    def get_pending_code(self, code_hash: str) -> Optional[PendingCode]:
        return self.pending_codes.get(code_hash)

    def consume_pending_code(self, code_hash: str) -> bool:
        with self._lock:
            pending = self.pending_codes.get(code_hash)
            if pending is None or pending.consumed_at is not None:
                return False
            self.pending_codes[code_hash] = pending.model_copy(update={"consumed_at": int(time.time())})
            return True

    def record_nonce(self, nonce: str, expires_at: int) -> bool:
        with self._lock:
            self._purge_expired()
            if nonce in self.used_nonces:
                return False
            self.used_nonces[nonce] = expires_at
            return True

    def _purge_expired(self) -> None:
        # Caller holds the lock. Consumed codes are kept until expiry so a
        # replay is still recognised as one.
        now = time.time()
        for key in [k for k, v in self.pending_codes.items() if v.expires_at <= now]:
            del self.pending_codes[key]
        for key in [k for k, exp in self.used_nonces.items() if exp <= now]:
            del self.used_nonces[key]


class SupabaseStore(GatewayStore):
    """Store backed by Supabase (PostgREST) tables.

    Expected tables:
        gateway_clients(client_id pk, data jsonb)
        gateway_consents(client_id, user_principal, data jsonb, pk(client_id, user_principal))
        gateway_codes(code_hash pk, data jsonb, expires_at bigint, consumed_at bigint null)
        gateway_nonces(nonce pk, expires_at bigint)
    """

    CLIENTS = "gateway_clients"
    CONSENTS = "gateway_consents"
    CODES = "gateway_codes"
    NONCES = "gateway_nonces"

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    def put_client(self, client: ClientRegistration) -> None:
        self.supabase.table(self.CLIENTS).insert(
            {"client_id": client.client_id, "data": client.model_dump()}
        ).execute()

    def get_client(self, client_id: str) -> Optional[ClientRegistration]:
        result = self.supabase.table(self.CLIENTS).select("data").eq("client_id", client_id).limit(1).execute()
        if not result.data:
            return None
        return ClientRegistration.model_validate(result.data[0]["data"])

    def put_consent(self, decision: ConsentDecision) -> None:
        self.supabase.table(self.CONSENTS).upsert(
            {
                "client_id": decision.client_id,
                "user_principal": decision.user_principal,
                "data": decision.model_dump(),
            },
            on_conflict="client_id,user_principal",
        ).execute()

    def get_consent(self, client_id: str, user_principal: str) -> Optional[ConsentDecision]:
        result = (
            self.supabase.table(self.CONSENTS)
            .select("data")
            .eq("client_id", client_id)
            .eq("user_principal", user_principal)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return ConsentDecision.model_validate(result.data[0]["data"])

    def put_pending_code(self, pending: PendingCode) -> None:
        self.supabase.table(self.CODES).insert(
            {
                "code_hash": pending.code_hash,
                "data": pending.model_dump(exclude={"consumed_at"}),
                "expires_at": pending.expires_at,
                "consumed_at": None,
            }
        ).execute()

    def get_pending_code(self, code_hash: str) -> Optional[PendingCode]:
        result = (
            self.supabase.table(self.CODES)
            .select("data, consumed_at")
            .eq("code_hash", code_hash)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        row = result.data[0]
        return PendingCode.model_validate({**row["data"], "consumed_at": row.get("consumed_at")})

    def consume_pending_code(self, code_hash: str) -> bool:
        # Conditional write: only a row that is still unconsumed is updated,
        # so PostgREST returns it to exactly one caller.
        result = (
            self.supabase.table(self.CODES)
            .update({"consumed_at": int(time.time())})
            .eq("code_hash", code_hash)
            .is_("consumed_at", "null")
            .execute()
        )
        return len(result.data or []) == 1

    def record_nonce(self, nonce: str, expires_at: int) -> bool:
        result = (
            self.supabase.table(self.NONCES)
            .upsert({"nonce": nonce, "expires_at": expires_at}, on_conflict="nonce", ignore_duplicates=True)
            .execute()
        )
        return len(result.data or []) == 1


def create_store(config) -> GatewayStore:
    """Build the store selected by configuration."""
    if config.store_backend == "supabase":
        from supabase import create_client

        logger.info("[STORE] Using Supabase store")
        return SupabaseStore(create_client(config.supabase_url, config.supabase_key))
    logger.info("[STORE] Using in-memory store (single process only)")
    return MemoryStore()
