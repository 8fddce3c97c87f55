"""HTTP interface: JSON API for tunnels, settings, cron, logs and backups."""

import copy
import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from werkzeug.wrappers import Request, Response

from .backup import BackupError, backup_filename, create_backup, restore_backup
from .cron import CronError
from .killswitch import KillSwitchError
from .state import Settings, TunnelCfg, to_json
from .vpn import VPNError

log = logging.getLogger(__name__)

INDEX_PATH = Path(__file__).resolve().parent / "static" / "index.html"

_INT_RE = re.compile(r"[+-]?[0-9]+")


class _HTTPError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _json_response(code: int, value: Any) -> Response:
    body = json.dumps(value, ensure_ascii=False) + "\n"
    return Response(body, status=code, content_type="application/json")


def _error_response(code: int, message: str) -> Response:
    return _json_response(code, {"error": message})


def _require_post(request: Request) -> None:
    if request.method != "POST":
        raise _HTTPError(405, "POST required")


def _query_int(request: Request, key: str) -> int:
    raw = request.args.get(key, "")
    if not raw:
        raise _HTTPError(400, f"missing {key}")
    if not _INT_RE.fullmatch(raw):
        raise _HTTPError(400, f"invalid {key}: {raw!r}")
    return int(raw)


def _read_json(request: Request) -> Any:
    try:
        return json.loads(request.get_data())
    except ValueError as exc:
        raise _HTTPError(400, "invalid JSON") from exc


def _read_object(request: Request) -> dict:
    data = _read_json(request)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _HTTPError(400, "invalid JSON")
    return data


def _decode(request: Request, factory: Callable[[dict], Any]) -> Any:
    data = _read_object(request)
    try:
        return factory(data)
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise _HTTPError(400, "invalid JSON") from exc


def _string_fields(body: dict, *names: str) -> list[str]:
    values = []
    for name in names:
        value = body.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise _HTTPError(400, "invalid JSON")
        values.append(value)
    return values


def _quietly(fn: Callable, *args) -> None:
    try:
        fn(*args)
    except Exception as exc:  # background work reports through the log only
        log.warning("%s failed: %s", getattr(fn, "__name__", fn), exc)


def _background(fn: Callable, *args) -> threading.Thread:
    thread = threading.Thread(target=_quietly, args=(fn, *args), daemon=True)
    thread.start()
    return thread


class WebServer:
    """WSGI application serving the web UI and its JSON API."""

    def __init__(self, vpn, cron, monitor, killswitch, state, data_dir):
        self._vpn = vpn
        self._cron = cron
        self._monitor = monitor
        self._ks = killswitch
        self._state = state
        self._data_dir = Path(data_dir)
        self._index_html: Optional[bytes] = None
        self._routes = {
            "/api/tunnels": self._tunnels,
            "/api/tunnels/upload": self._upload,
            "/api/tunnels/import": self._import,
            "/api/tunnels/start": self._start,
            "/api/tunnels/stop": self._stop,
            "/api/tunnels/restart": self._restart,
            "/api/tunnels/delete": self._delete,
            "/api/tunnels/autoreconnect": self._auto_reconnect,
            "/api/tunnels/settings": self._tunnel_settings,
            "/api/tunnels/config": self._tunnel_config,
            "/api/tunnels/speedtest": self._speed_test,
            "/api/tunnels/speedtest/all": self._speed_test_all,
            "/api/tunnels/mtu": self._mtu,
            "/api/tunnels/mtu/all": self._mtu_all,
            "/api/settings": self._settings,
            "/api/cron": self._cron_list,
            "/api/cron/add": self._cron_add,
            "/api/cron/delete": self._cron_delete,
            "/api/logs": self._logs,
            "/api/logs/clear": self._logs_clear,
            "/api/killswitch/arm": self._ks_arm,
            "/api/killswitch/disarm": self._ks_disarm,
            "/api/ipcheck": self._ip_check,
            "/api/webhook/test": self._webhook_test,
            "/api/backup": self._backup,
            "/api/restore": self._restore,
            "/api/groups": self._groups,
            "/api/stats": self._stats,
        }

    def wsgi_app(self, environ, start_response):
        request = Request(environ)
        handler = self._routes.get(request.path, self._index)
        try:
            response = handler(request)
        except _HTTPError as exc:
            response = _error_response(exc.code, exc.message)
        return response(environ, start_response)

    def __call__(self, environ, start_response):
        return self.wsgi_app(environ, start_response)

    # ── UI ───────────────────────────────────────────────────────────────────

    def _index(self, request: Request) -> Response:
        if self._index_html is None:
            try:
                self._index_html = INDEX_PATH.read_bytes()
            except OSError:
                self._index_html = b""
        return Response(self._index_html, content_type="text/html; charset=utf-8")

    # ── Tunnels ──────────────────────────────────────────────────────────────

    def _tunnels(self, request: Request) -> Response:
        return _json_response(200, [t.to_dict() for t in self._vpn.tunnels])

    def _upload(self, request: Request) -> Response:
        _require_post(request)
        results = []
        for storage in request.files.getlist("config"):
            data = storage.read()
            try:
                info = self._vpn.add_config(storage.filename or "", data)
            except VPNError as exc:
                raise _HTTPError(400, str(exc)) from exc
            results.append(info.to_dict())
        return _json_response(200, results)

    def _import(self, request: Request) -> Response:
        _require_post(request)
        (url,) = _string_fields(_read_object(request), "url")
        try:
            info = self._vpn.import_from_url(url)
        except VPNError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, info.to_dict())

    def _start(self, request: Request) -> Response:
        index = _query_int(request, "index")
        try:
            self._vpn.start_tunnel(index)
        except VPNError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, {"status": "starting"})

    def _stop(self, request: Request) -> Response:
        index = _query_int(request, "index")
        try:
            self._vpn.stop_tunnel(index)
        except VPNError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, {"status": "stopped"})

    def _restart(self, request: Request) -> Response:
        index = _query_int(request, "index")
        _background(self._vpn.restart_tunnel, index)
        return _json_response(200, {"status": "restarting"})

    def _delete(self, request: Request) -> Response:
        if request.method not in ("POST", "DELETE"):
            raise _HTTPError(405, "POST or DELETE required")
        index = _query_int(request, "index")
        try:
            self._vpn.delete_config(index)
        except VPNError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, {"status": "deleted"})

    def _auto_reconnect(self, request: Request) -> Response:
        index = _query_int(request, "index")
        enabled = request.args.get("enabled", "").lower() == "true"
        try:
            self._vpn.set_auto_reconnect(index, enabled)
        except VPNError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, {"auto_reconnect": enabled})

    def _persisted(self, index: int):
        try:
            return self._state.persisted_tunnel(index)
        except LookupError:
            return None

    def _tunnel_settings(self, request: Request) -> Response:
        index = _query_int(request, "index")
        if request.method == "GET":
            persisted = self._persisted(index)
            if persisted is None:
                raise _HTTPError(404, "not found")
            return _json_response(200, to_json(persisted.cfg))
        cfg = _decode(request, TunnelCfg.from_dict)
        try:
            self._vpn.update_tunnel_settings(index, cfg)
        except VPNError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, to_json(cfg))

    def _tunnel_config(self, request: Request) -> Response:
        index = _query_int(request, "index")
        if request.method == "GET":
            try:
                content = self._vpn.read_config(index)
            except (VPNError, OSError) as exc:
                raise _HTTPError(500, str(exc)) from exc
            return _json_response(200, {"content": content})
        content, note = _string_fields(_read_object(request), "content", "note")
        try:
            self._vpn.write_config(index, content)
        except (VPNError, OSError) as exc:
            raise _HTTPError(500, str(exc)) from exc
        if note:
            persisted = self._persisted(index)
            if persisted is not None:
                cfg = copy.deepcopy(persisted.cfg)
                cfg.note = note
                try:
                    self._vpn.update_tunnel_settings(index, cfg)
                except VPNError as exc:
                    log.warning("update note of tunnel %d: %s", index, exc)
        return _json_response(200, {"status": "saved"})

    def _speed_test(self, request: Request) -> Response:
        index = _query_int(request, "index")
        _background(self._vpn.run_speed_test, index)
        return _json_response(200, {"status": "started"})

    def _speed_test_all(self, request: Request) -> Response:
        _background(self._monitor.run_speed_test_all)
        return _json_response(200, {"status": "started"})

    def _mtu(self, request: Request) -> Response:
        index = _query_int(request, "index")
        _background(self._vpn.detect_mtu, index)
        return _json_response(200, {"status": "started"})

    def _mtu_all(self, request: Request) -> Response:
        _background(self._monitor.run_mtu_all)
        return _json_response(200, {"status": "started"})

    # ── Settings ─────────────────────────────────────────────────────────────

    def _settings(self, request: Request) -> Response:
        if request.method == "GET":
            return _json_response(200, to_json(self._state.settings))
        cfg = _decode(request, Settings.from_dict)
        self._state.settings = cfg

        try:
            if cfg.kill_switch.enabled and not self._ks.armed:
                self._ks.arm(cfg.kill_switch.allow_lan)
            elif not cfg.kill_switch.enabled and self._ks.armed:
                self._ks.disarm()
        except KillSwitchError as exc:
            log.warning("kill switch: %s", exc)

        return _json_response(200, to_json(cfg))

    # ── Cron ─────────────────────────────────────────────────────────────────

    def _cron_list(self, request: Request) -> Response:
        return _json_response(200, [to_json(job) for job in self._cron.jobs])

    def _cron_add(self, request: Request) -> Response:
        _require_post(request)
        expression, target, action = _string_fields(
            _read_object(request), "expression", "target", "action"
        )
        try:
            job = self._cron.add_job(expression, target, action)
        except CronError as exc:
            raise _HTTPError(400, str(exc)) from exc
        return _json_response(200, to_json(job))

    def _cron_delete(self, request: Request) -> Response:
        job_id = _query_int(request, "id")
        try:
            self._cron.delete_job(job_id)
        except CronError as exc:
            raise _HTTPError(404, str(exc)) from exc
        return _json_response(200, {"status": "deleted"})

    # ── Logs ─────────────────────────────────────────────────────────────────

    def _logs(self, request: Request) -> Response:
        return _json_response(200, to_json(self._state.snapshot())["logs"])

    def _logs_clear(self, request: Request) -> Response:
        _require_post(request)
        self._state.clear_logs()
        return _json_response(200, {"status": "cleared"})

    # ── Kill switch ──────────────────────────────────────────────────────────

    def _ks_arm(self, request: Request) -> Response:
        _require_post(request)
        allow_lan = self._state.settings.kill_switch.allow_lan
        try:
            self._ks.arm(allow_lan)
        except KillSwitchError as exc:
            raise _HTTPError(500, str(exc)) from exc
        return _json_response(200, {"armed": True})

    def _ks_disarm(self, request: Request) -> Response:
        _require_post(request)
        try:
            self._ks.disarm()
        except KillSwitchError as exc:
            raise _HTTPError(500, str(exc)) from exc
        return _json_response(200, {"armed": False})

    # ── IP check and webhook ─────────────────────────────────────────────────

    def _ip_check(self, request: Request) -> Response:
        _background(self._vpn.check_external_ip)
        return _json_response(
            200, {"status": "checking", "current_ip": self._state.external_ip}
        )

    def _webhook_test(self, request: Request) -> Response:
        _require_post(request)
        _background(self._monitor.test_webhook)
        return _json_response(200, {"status": "sent"})

    # ── Groups ───────────────────────────────────────────────────────────────

    def _groups(self, request: Request) -> Response:
        if request.method == "GET":
            return _json_response(200, list(self._state.snapshot().groups))
        groups = _read_json(request)
        if groups is None:
            groups = []
        if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
            raise _HTTPError(400, "invalid JSON")
        self._state.groups = groups
        return _json_response(200, groups)

    # ── Backup / restore ─────────────────────────────────────────────────────

    def _backup(self, request: Request) -> Response:
        data = create_backup(self._data_dir)
        response = Response(data, content_type="application/zip")
        response.headers["Content-Disposition"] = f'attachment; filename="{backup_filename()}"'
        return response

    def _restore(self, request: Request) -> Response:
        _require_post(request)
        upload = request.files.get("backup")
        if upload is None:
            raise _HTTPError(400, "no file")
        try:
            restore_backup(self._data_dir, upload.read())
        except BackupError as exc:
            raise _HTTPError(400, "invalid zip") from exc
        self._state.load()
        return _json_response(200, {"status": "restored — restart vpnctl to apply"})

    # ── Stats ────────────────────────────────────────────────────────────────

    def stats(self) -> dict:
        """Everything the UI polls for, as a JSON-ready dict."""
        snap = to_json(self._state.snapshot())
        return {
            "tunnels": [t.to_dict() for t in self._vpn.tunnels],
            "logs": snap["logs"],
            "settings": snap["settings"],
            "cron_jobs": [to_json(job) for job in self._cron.jobs],
            "traffic_history": snap["traffic_history"],
            "started_at": snap["started_at"],
            "external_ip": snap["external_ip"],
            "kill_switch_armed": self._ks.armed,
            "groups": snap["groups"],
        }

    def _stats(self, request: Request) -> Response:
        return _json_response(200, self.stats())