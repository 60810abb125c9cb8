"""Secret agent answering NetworkManager's credential requests."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .errors import BusyError, SecretUnavailableError
from .networkmanager import GET_SECRETS_ALLOW_INTERACTION, GET_SECRETS_REQUEST_NEW
from .profiles import ConnectionProfile, ProfileManager
from .transport import NetworkManagerTransport, SecretRequest

logger = logging.getLogger(__name__)

SecretPrompt = Callable[[ConnectionProfile, SecretRequest | None], str | None]


class SecretLease:
    """Plaintext secret held for the duration of one activation attempt."""

    def __init__(self, agent: "SecretAgent", profile: ConnectionProfile, secret: str, source: str) -> None:
        self._agent = agent
        self.profile_id = profile.id
        self.key = profile.secrets.key if profile.secrets is not None else "psk"
        self.source = source
        self._secret: str | None = secret
        self.served = 0
        self.rejected = False
        self.released = False

    @property
    def secret(self) -> str | None:
        return self._secret

    def release(self, succeeded: bool = False) -> None:
        """End the lease. Only a successful attempt feeds the cache."""

        if self.released:
            return
        self.released = True
        secret, self._secret = self._secret, None
        self._agent._finish(self, secret, succeeded)

    def __enter__(self) -> "SecretLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release(False)

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"SecretLease(profile_id={self.profile_id!r}, source={self.source!r}, {state})"


class SecretAgent:
    """Resolve secrets for agent-owned profiles without persisting them.

    Sources, in order: the secret supplied by the caller for this attempt,
    the in-memory cache filled by earlier successful attempts, and finally
    the interactive ``prompt``.
    """

    def __init__(
        self,
        transport: NetworkManagerTransport,
        profiles: ProfileManager,
        *,
        prompt: SecretPrompt | None = None,
        identifier: str = "io.nmwifi.agent",
        cache_secrets: bool = True,
        allow_prompt: bool = True,
    ) -> None:
        self._transport = transport
        self._profiles = profiles
        self._prompt = prompt
        self._identifier = identifier
        self._cache_enabled = cache_secrets
        self._allow_prompt = allow_prompt
        self._cache: dict[str, str] = {}
        self._leases: dict[str, SecretLease] = {}
        self._lock = threading.Lock()
        self._registered = False

    @property
    def registered(self) -> bool:
        return self._registered

    def configure(self, *, cache_secrets: bool, allow_prompt: bool) -> None:
        with self._lock:
            self._cache_enabled = cache_secrets
            self._allow_prompt = allow_prompt
            if not cache_secrets:
                self._cache.clear()

    def register(self) -> None:
        self._transport.register_secret_agent(self._identifier, self.handle_request)
        self._registered = True
        logger.info("Registered secret agent %s", self._identifier)

    def unregister(self) -> None:
        if not self._registered:
            return
        self._registered = False
        self._transport.unregister_secret_agent()

    # ------------------------------ operations -----------------------------
    def acquire(self, profile: ConnectionProfile, supplied: str | None = None) -> SecretLease:
        """Resolve the secret for one attempt on ``profile``."""

        if profile.secrets is None:
            raise SecretUnavailableError(f"Profile {profile.name} does not use a secret")
        with self._lock:
            if profile.id in self._leases:
                raise BusyError(f"Profile {profile.name} is already being activated")
            cached = self._cache.get(profile.id) if self._cache_enabled else None
        if supplied:
            secret, source = supplied, "supplied"
        elif cached:
            secret, source = cached, "cache"
        else:
            secret, source = self._ask(profile, None), "prompt"
        if not secret:
            raise SecretUnavailableError(f"No secret available for {profile.name}")
        lease = SecretLease(self, profile, secret, source)
        with self._lock:
            if profile.id in self._leases:
                raise BusyError(f"Profile {profile.name} is already being activated")
            self._leases[profile.id] = lease
        logger.debug("Acquired secret for %s from %s", profile.id, source)
        return lease

    def handle_request(self, request: SecretRequest) -> dict[str, str]:
        """Answer a daemon ``GetSecrets`` request or raise to refuse it."""

        profile_id = request.connection_id
        if not self._profiles.is_managed(profile_id):
            raise SecretUnavailableError(f"Connection {profile_id} is not managed by this agent")
        profile = self._profiles.get(profile_id)
        key = profile.secrets.key if profile.secrets is not None else "psk"
        request_new = bool(request.flags & GET_SECRETS_REQUEST_NEW)
        with self._lock:
            lease = self._leases.get(profile_id)
            if lease is not None:
                if request_new and lease.served:
                    # The daemon rejected the secret it was given.
                    lease.rejected = True
                    self._cache.pop(profile_id, None)
                    secret = None
                else:
                    secret = lease.secret
                    lease.served += 1
            else:
                if request_new:
                    self._cache.pop(profile_id, None)
                secret = self._cache.get(profile_id) if self._cache_enabled else None
        if lease is not None:
            if not secret:
                logger.info("Refusing new secret request for %s during attempt", profile_id)
                raise SecretUnavailableError(f"Secret for {profile.name} was rejected")
            return {key: secret}
        if not secret and request.flags & GET_SECRETS_ALLOW_INTERACTION:
            secret = self._ask(profile, request)
        if not secret:
            raise SecretUnavailableError(f"No secret available for {profile.name}")
        return {key: secret}

    def lease_for(self, profile_id: str) -> SecretLease | None:
        with self._lock:
            return self._leases.get(profile_id)

    def has_cached(self, profile_id: str) -> bool:
        with self._lock:
            return profile_id in self._cache

    def forget(self, profile_id: str) -> bool:
        with self._lock:
            return self._cache.pop(profile_id, None) is not None

    # ----------------------------- implementation --------------------------
    def _ask(self, profile: ConnectionProfile, request: SecretRequest | None) -> str | None:
        if not self._allow_prompt or self._prompt is None:
            return None
        answer = self._prompt(profile, request)
        return answer or None

    def _finish(self, lease: SecretLease, secret: str | None, succeeded: bool) -> None:
        with self._lock:
            if self._leases.get(lease.profile_id) is lease:
                del self._leases[lease.profile_id]
            if lease.rejected:
                self._cache.pop(lease.profile_id, None)
            elif succeeded and secret and self._cache_enabled:
                self._cache[lease.profile_id] = secret


__all__ = ["SecretAgent", "SecretLease", "SecretPrompt"]
