"""
MikroTik Router Integration for Qonnect Hotspot Billing

Paid devices get a ``bypassed`` /ip/hotspot/ip-binding entry; expired
devices are kicked from /ip/hotspot/active and lose their binding.
"""

import logging
import socket
import threading
import time

import routeros_api
from django.conf import settings

from .admission import InvalidMACAddress, validate_mac_format

logger = logging.getLogger(__name__)

BINDING_COMMENT_PREFIX = "Qonnect"

# socket.setdefaulttimeout is process-wide; worker threads connect one at a time
_connect_lock = threading.Lock()


def safe_close(api):
    """Safely close routeros_api communicator if present."""
    try:
        if api:
            api.get_communicator().close()
    except Exception as e:
        logger.debug(f"Ignoring error while closing RouterOS connection: {e}")


def connect_router(host, port, username, password, use_ssl=False, ssl_verify=False,
                   retries=2, timeout=5):
    """
    Return an authenticated RouterOS API connection.
    Caller should close it with safe_close(api) in a finally block.

    Args:
        retries: Number of connection attempts before giving up
        timeout: Socket timeout in seconds
    """
    last_error = None
    with _connect_lock:
        original_timeout = socket.getdefaulttimeout()
        socket.setdefaulttimeout(timeout)
        try:
            for attempt in range(retries):
                try:
                    pool = routeros_api.RouterOsApiPool(
                        host,
                        username=username,
                        password=password,
                        port=port,
                        use_ssl=use_ssl,
                        ssl_verify=ssl_verify,
                        plaintext_login=True,
                    )
                    api = pool.get_api()
                    logger.debug(
                        f"MikroTik API connected successfully on attempt {attempt + 1}"
                    )
                    return api
                except Exception as e:
                    last_error = e
                    logger.warning(
                        f"MikroTik connection attempt {attempt + 1}/{retries} failed: {e}"
                    )
                    if attempt < retries - 1:
                        time.sleep(1)
        finally:
            socket.setdefaulttimeout(original_timeout)

    raise last_error or ConnectionError("Failed to connect to MikroTik router")


class NetworkAccessController:
    """
    Grants and revokes hotspot access on one MikroTik router.

    Every method returns a ``{"success": bool, ...}`` dict and never
    raises. When ``enabled`` is False nothing is sent to the router and
    every call succeeds (dev mode).
    """

    def __init__(self, enabled=None, host=None, port=None, username=None,
                 password=None, use_ssl=None, ssl_verify=None, timeout=None,
                 retries=None, api_factory=None):
        self.enabled = settings.MIKROTIK_ENABLED if enabled is None else enabled
        self.host = host or settings.MIKROTIK_HOST
        self.port = int(port or settings.MIKROTIK_PORT)
        self.username = username or settings.MIKROTIK_USER
        self.password = password if password is not None else settings.MIKROTIK_PASSWORD
        self.use_ssl = settings.MIKROTIK_USE_SSL if use_ssl is None else use_ssl
        self.ssl_verify = settings.MIKROTIK_SSL_VERIFY if ssl_verify is None else ssl_verify
        self.timeout = timeout or settings.MIKROTIK_TIMEOUT
        self.retries = retries or getattr(settings, "MIKROTIK_CONNECT_RETRIES", 2)
        self._api_factory = api_factory

    @classmethod
    def from_settings(cls):
        return cls()

    def _connect(self):
        if self._api_factory is not None:
            return self._api_factory()
        return connect_router(
            self.host,
            self.port,
            self.username,
            self.password,
            use_ssl=self.use_ssl,
            ssl_verify=self.ssl_verify,
            retries=self.retries,
            timeout=self.timeout,
        )

    def grant(self, mac_address, duration_label, correlation_id=None):
        """Create or refresh a bypass binding for ``mac_address``."""
        try:
            mac = validate_mac_format(mac_address)
        except InvalidMACAddress as e:
            logger.error(f"❌ Refusing to grant access to invalid MAC {mac_address!r}: {e}")
            return {"success": False, "message": str(e)}

        comment = f"{BINDING_COMMENT_PREFIX}_{duration_label}_{correlation_id or int(time.time())}"

        if not self.enabled:
            logger.info(f"📝 [DEV MODE] Would grant {mac} for {duration_label}")
            return {"success": True, "message": f"Dev mode: granted {mac}"}

        api = None
        try:
            api = self._connect()
            bindings = api.get_resource("/ip/hotspot/ip-binding")
            existing = bindings.get(mac_address=mac)

            if existing:
                for item in existing:
                    binding_id = item.get(".id") or item.get("id")
                    if binding_id:
                        bindings.set(
                            id=binding_id,
                            type="bypassed",
                            comment=comment,
                            mac_address=mac,
                        )
                logger.info(f"✅ Updated bypass binding for {mac} ({duration_label})")
            else:
                bindings.add(type="bypassed", mac_address=mac, comment=comment)
                logger.info(f"✅ Created bypass binding for {mac} ({duration_label})")

            return {"success": True, "message": f"Granted {mac}", "comment": comment}
        except Exception as e:
            logger.error(f"❌ MikroTik grant failed for {mac}: {e}")
            return {"success": False, "message": f"Failed to grant access: {e}"}
        finally:
            safe_close(api)

    def revoke(self, mac_address):
        """Kick the device's active hotspot session and drop its bindings."""
        try:
            mac = validate_mac_format(mac_address)
        except InvalidMACAddress as e:
            return {"success": False, "message": str(e)}

        if not self.enabled:
            logger.info(f"📝 [DEV MODE] Would disconnect {mac}")
            return {"success": True, "message": f"Dev mode: disconnected {mac}"}

        api = None
        try:
            api = self._connect()

            active = api.get_resource("/ip/hotspot/active")
            sessions_removed = 0
            for entry in active.get():
                if (entry.get("mac-address") or "").upper() != mac:
                    continue
                entry_id = entry.get(".id") or entry.get("id")
                if entry_id:
                    active.remove(id=entry_id)
                    sessions_removed += 1

            bindings = api.get_resource("/ip/hotspot/ip-binding")
            bindings_removed = 0
            for item in bindings.get(mac_address=mac):
                binding_id = item.get(".id") or item.get("id")
                if binding_id:
                    bindings.remove(id=binding_id)
                    bindings_removed += 1

            if sessions_removed or bindings_removed:
                logger.info(
                    f"✅ Disconnected {mac} ({sessions_removed} session(s), "
                    f"{bindings_removed} binding(s))"
                )
            else:
                logger.info(f"ℹ️ No active connection found for {mac}")

            return {
                "success": True,
                "message": f"Disconnected {mac}",
                "sessions_removed": sessions_removed,
                "bindings_removed": bindings_removed,
            }
        except Exception as e:
            logger.error(f"❌ MikroTik disconnect failed for {mac}: {e}")
            return {"success": False, "message": f"Failed to revoke access: {e}"}
        finally:
            safe_close(api)

    def list_active_connections(self):
        """List active hotspot users using /ip/hotspot/active."""
        if not self.enabled:
            return {"success": True, "data": []}

        api = None
        try:
            api = self._connect()
            devices = []
            for entry in api.get_resource("/ip/hotspot/active").get():
                devices.append(
                    {
                        "mac_address": entry.get("mac-address"),
                        "ip_address": entry.get("address"),
                        "user": entry.get("user"),
                        "uptime": entry.get("uptime"),
                    }
                )
            return {"success": True, "data": devices}
        except Exception as e:
            logger.error(f"Error getting active hotspot connections: {e}")
            return {"success": False, "message": str(e), "data": []}
        finally:
            safe_close(api)
