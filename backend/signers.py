import json
import time
import asyncio
import inspect
import logging

import config
from errors import SigningFailed, SigningPendingExternally, Timeout
from models import SignInMethod, StorageKey, PendingSignature
from nostr_crypto import (prepare_event, finalize_event, attach_signature, verify_event,
                          normalize_secret, normalize_pubkey, generate_secret, is_hex_signature)
from secret_storage import decrypt_private_key, requires_password


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class Signer:
    """
    Signs a kind 9734 zap request.

    sign() returns a new signed event dict; it raises SigningFailed, or
    SigningPendingExternally when the signature will arrive later.
    """

    method = None
    fallback_reason = None

    async def sign(self, event, context=None):
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} method={self.method.value if self.method else None}>"


class ExtensionSigner(Signer):
    """Delegates to an in-process NIP-07 style capability (get_public_key / sign_event)."""

    method = SignInMethod.EXTENSION

    def __init__(self, capability):
        self.capability = capability

    async def sign(self, event, context=None):
        try:
            pubkey = normalize_pubkey(await _maybe_await(self.capability.get_public_key()))
            signed = await _maybe_await(self.capability.sign_event(prepare_event(event, pubkey)))
        except Exception as e:
            logging.error(f"[SIGNER] Extension signing failed: {e}")
            raise SigningFailed(f"Extension signing failed: {e}")

        if not isinstance(signed, dict) or not verify_event(signed):
            raise SigningFailed("Extension returned an invalid signed event")
        return dict(signed)


def build_signer_uri(event):
    return (f"nostrsigner:{json.dumps(event, separators=(',', ':'))}"
            f"?compressionType=none&returnType=signature&type=sign_event")


class ExternalSigner(Signer):
    """
    Out-of-process signer reached through a nostrsigner: URI.

    Phase one persists the unsigned event with the caller's context under
    SignZapEvent, launches the URI and raises SigningPendingExternally.
    Phase two runs when the app returns to the foreground: resume() reads the
    signature from the clipboard and rebuilds the signed event.
    """

    method = SignInMethod.EXTERNAL_SIGNER

    def __init__(self, store, launcher, wait_timeout=None, clipboard_retries=None,
                 retry_delay=None, clock=time.time):
        self.store = store
        self.launcher = launcher
        self.wait_timeout = config.EXTERNAL_SIGNER_WAIT_TIMEOUT if wait_timeout is None else wait_timeout
        self.clipboard_retries = config.CLIPBOARD_RETRIES if clipboard_retries is None else clipboard_retries
        self.retry_delay = config.CLIPBOARD_RETRY_DELAY if retry_delay is None else retry_delay
        self._clock = clock
        self._cancel_event = None

    @property
    def pubkey(self):
        stored = self.store.get(StorageKey.PUBLIC_KEY)
        return normalize_pubkey(stored) if stored else None

    async def sign(self, event, context=None):
        pubkey = self.pubkey
        if not pubkey:
            raise SigningFailed("External signer has no public key; sign in again")

        prepared = prepare_event(event, pubkey)
        now = self._clock()
        pending = PendingSignature(
            event=prepared,
            context=dict(context or {}),
            created_at=now,
            expires_at=now + self.wait_timeout,
        )
        self.store.set_json(StorageKey.SIGN_ZAP_EVENT, pending.to_dict())

        try:
            await _maybe_await(self.launcher(build_signer_uri(prepared)))
        except Exception as e:
            self.store.remove(StorageKey.SIGN_ZAP_EVENT)
            logging.error(f"[SIGNER] Failed to launch external signer: {e}")
            raise SigningFailed(f"Failed to launch external signer: {e}")

        logging.info(f"[SIGNER] Handed event {prepared['id'][:8]} to external signer")
        raise SigningPendingExternally(pending)

    def pending(self):
        """The persisted pending request, or None. Expired records are discarded."""
        data = self.store.get_json(StorageKey.SIGN_ZAP_EVENT)
        if not data:
            return None
        try:
            pending = PendingSignature.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logging.warning("[SIGNER] Discarding unreadable pending signature record")
            self.store.remove(StorageKey.SIGN_ZAP_EVENT)
            return None
        if pending.expired(self._clock()):
            logging.info(f"[SIGNER] Pending signature for {pending.event.get('id', '')[:8]} expired")
            self.store.remove(StorageKey.SIGN_ZAP_EVENT)
            return None
        return pending

    async def resume(self, read_clipboard):
        """
        Finish a pending signature.

        Args:
            read_clipboard: callable (sync or async) returning the clipboard text

        Returns:
            (signed_event, context)
        """
        pending = self.pending()
        if pending is None:
            raise SigningFailed("No pending external signature")

        signature = None
        for attempt in range(max(1, self.clipboard_retries)):
            text = await _maybe_await(read_clipboard())
            candidate = (text or '').strip()
            if is_hex_signature(candidate):
                signature = candidate
                break
            if attempt + 1 < self.clipboard_retries:
                await asyncio.sleep(self.retry_delay)

        if signature is None:
            raise SigningFailed("No signature found on the clipboard")

        signed = attach_signature(pending.event, signature)
        if not verify_event(signed):
            self.store.remove(StorageKey.SIGN_ZAP_EVENT)
            raise SigningFailed("Signature from external signer does not verify")

        self.store.remove(StorageKey.SIGN_ZAP_EVENT)
        logging.info(f"[SIGNER] External signature received for {signed['id'][:8]}")
        return signed, pending.context

    async def wait_for_return(self, foreground, timeout=None):
        """
        Wait for the app to come back to the foreground.

        For embedders that own the visibility transition and call resume()
        themselves. The web app does not use it: there the browser posts the
        clipboard to /api/signer/resume, and a stale request is bounded by
        the record's expires_at and DELETE /api/signer/pending.

        Args:
            foreground: asyncio.Event set on the visibility transition
            timeout: seconds, defaults to the pending record's remaining lifetime

        Raises:
            Timeout when the signer never returns, SigningFailed when cancelled
        """
        if timeout is None:
            pending = self.pending()
            timeout = max(0.0, pending.expires_at - self._clock()) if pending else self.wait_timeout

        self._cancel_event = asyncio.Event()
        waiters = [asyncio.ensure_future(foreground.wait()), asyncio.ensure_future(self._cancel_event.wait())]
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self._cancel_event.is_set():
            self.store.remove(StorageKey.SIGN_ZAP_EVENT)
            raise SigningFailed("External signing cancelled by user")
        if not done:
            self.store.remove(StorageKey.SIGN_ZAP_EVENT)
            logging.warning(f"[SIGNER] External signer did not return within {timeout}s")
            raise Timeout("External signer did not return in time")
        return True

    def cancel(self):
        """User-visible cancel; drops the pending record and wakes any waiter."""
        self.store.remove(StorageKey.SIGN_ZAP_EVENT)
        if self._cancel_event is not None:
            self._cancel_event.set()
        logging.info("[SIGNER] External signing cancelled")


class LocalSecretSigner(Signer):
    """Signs with the locally stored secret, decrypted for each signature only."""

    method = SignInMethod.NSEC

    def __init__(self, store, password=None):
        self.store = store
        self._password = password

    @property
    def requires_password(self):
        blob = self.store.get(StorageKey.ENCRYPTED_PRIVATE_KEY)
        return bool(blob) and requires_password(blob)

    def _load_secret(self):
        blob = self.store.get(StorageKey.ENCRYPTED_PRIVATE_KEY)
        if blob:
            try:
                return decrypt_private_key(blob, self._password)
            except ValueError as e:
                raise SigningFailed(str(e))

        plain = self.store.get(StorageKey.PRIVATE_KEY)
        if plain:
            try:
                return normalize_secret(plain)
            except Exception:
                raise SigningFailed("Stored private key is not valid")
        raise SigningFailed("No private key found. Please sign in first.")

    async def sign(self, event, context=None):
        secret = self._load_secret()
        try:
            return finalize_event(event, secret)
        except Exception as e:
            # the exception text can echo its input; keep it out of the log
            logging.error(f"[SIGNER] Local signing failed ({type(e).__name__})")
            raise SigningFailed("Could not sign with the stored key")


class AnonymousSigner(Signer):
    """Throwaway key per signature so zaps cannot be linked to each other."""

    method = SignInMethod.ANONYMOUS

    def __init__(self, fallback_reason=None):
        self.fallback_reason = fallback_reason

    async def sign(self, event, context=None):
        return finalize_event(event, generate_secret())


def select_signer(method, extension=None, store=None, launcher=None, password=None) -> Signer:
    """
    Build the signer for a sign-in method.

    Unknown, missing or unusable methods fall back to AnonymousSigner with the
    reason recorded on signer.fallback_reason.
    """
    try:
        chosen = method if isinstance(method, SignInMethod) else SignInMethod(method)
    except ValueError:
        return _fallback(f"unknown sign-in method {method!r}" if method else "no sign-in method")

    if chosen is SignInMethod.EXTENSION:
        if extension is None:
            return _fallback("extension signer not available")
        return ExtensionSigner(extension)

    if chosen is SignInMethod.EXTERNAL_SIGNER:
        if store is None or launcher is None or not store.get(StorageKey.PUBLIC_KEY):
            return _fallback("external signer not configured")
        return ExternalSigner(store, launcher)

    if chosen is SignInMethod.NSEC:
        if store is None or not (store.get(StorageKey.ENCRYPTED_PRIVATE_KEY) or store.get(StorageKey.PRIVATE_KEY)):
            return _fallback("no stored private key")
        return LocalSecretSigner(store, password=password)

    return AnonymousSigner()


def _fallback(reason):
    logging.warning(f"[SIGNER] Falling back to anonymous signing: {reason}")
    return AnonymousSigner(fallback_reason=reason)


def signer_from_store(store, extension=None, launcher=None, password=None) -> Signer:
    """Resolve the signer from the persisted signInMethod."""
    return select_signer(store.get(StorageKey.SIGN_IN_METHOD), extension=extension, store=store,
                         launcher=launcher, password=password)
