import asyncio
import logging
import threading
import time
from dataclasses import asdict

import config
from models import StorageKey, ValidationCacheEntry


class ValidationCache:
    """
    Short-lived cache of lookup results (lightning address discovery, NIP-05).

    Entries are advisory: a miss or an expired entry means "look again", never
    "invalid". Negative results expire like positive ones so an endpoint that
    gets fixed is retried after the TTL.

    Concurrent lookups for the same key share one in-flight task.
    """

    def __init__(self, store=None, ttl=None, persist_key=StorageKey.VALIDATION_CACHE_BLOB, clock=time.time):
        self.store = store
        self.ttl = config.VALIDATION_CACHE_TTL if ttl is None else ttl
        self.persist_key = persist_key
        self._clock = clock
        self._entries = {}
        self._inflight = {}
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._dirty = False
        self._flush_scheduled = False
        self._load()

    def _load(self):
        if not self.store:
            return
        blob = self.store.get_json(self.persist_key, default=[])
        now = self._clock()
        for raw in blob if isinstance(blob, list) else []:
            try:
                entry = ValidationCacheEntry(**raw)
            except TypeError:
                continue
            if entry.is_fresh(self.ttl, now):
                self._entries[entry.key] = entry
        logging.info(f"[CACHE] Loaded {len(self._entries)} cached validation entries")

    def _persist(self):
        """
        Write the entries back to the store.

        On an event loop the write goes to the default executor so the
        encrypted file rewrite never blocks other exchanges; changes made
        before that flush starts share it. Call without holding self._lock.
        """
        if not self.store:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        with self._lock:
            self._dirty = True
            if self._flush_scheduled:
                return
            self._flush_scheduled = True
        loop.run_in_executor(None, self.flush)

    def flush(self):
        """Write pending changes now. Safe from any thread."""
        if not self.store:
            return
        with self._write_lock:
            with self._lock:
                self._flush_scheduled = False
                self._dirty = False
                blob = [asdict(e) for e in self._entries.values()]
            try:
                self.store.set_json(self.persist_key, blob)
            except (OSError, ValueError) as e:
                logging.error(f"[CACHE] Could not persist validation cache: {e}")

    def get(self, key):
        """Return a fresh entry for key, or None. Stale entries are dropped on the next write."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.is_fresh(self.ttl, self._clock()):
                del self._entries[key]
                return None
            return entry

    def put(self, key, valid, resolved_pubkey=None, reason=None, detail=None):
        entry = ValidationCacheEntry(
            key=key,
            valid=valid,
            timestamp=self._clock(),
            resolved_pubkey=resolved_pubkey,
            reason=reason,
            detail=detail,
        )
        with self._lock:
            now = self._clock()
            self._entries = {k: e for k, e in self._entries.items() if e.is_fresh(self.ttl, now)}
            self._entries[key] = entry
        self._persist()
        return entry

    def invalidate(self, key):
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            self._persist()

    def clear(self):
        with self._lock:
            self._entries.clear()
        self._persist()

    async def coalesce(self, key, factory):
        """
        Run factory() once per key at a time; concurrent callers await the same task.

        Tasks are bound to the running loop, so the in-flight map is keyed by loop too.
        """
        loop = asyncio.get_running_loop()
        inflight_key = (id(loop), key)
        task = self._inflight.get(inflight_key)
        if task is None:
            task = loop.create_task(factory())
            self._inflight[inflight_key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(inflight_key, None))
        else:
            logging.info(f"[CACHE] Joining in-flight lookup for {key}")
        return await asyncio.shield(task)
