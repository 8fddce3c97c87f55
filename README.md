# vpnctl

A web control panel for running several OpenVPN tunnels on one Linux host.
It starts and stops tunnels, reconnects them when they drop, measures speed,
ping and MTU, restarts slow tunnels, runs scheduled actions, records daily
traffic, posts webhook events and can arm an iptables kill switch.

## Installation

```
pip install .
```

vpnctl drives system tools: `openvpn`, `iptables`, `ip`, `tc`, `ping` and
`curl`, plus `dpkg-deb` when it has to unpack bundled packages. Run it as
root so it can manage tunnels and firewall rules; otherwise it prints a
warning on start.

## Running

```
vpnctl --port 8080 --data /etc/vpnctl
```

- `--port` (or `-port`) — port of the web server, bound to `0.0.0.0`
  (default `8080`)
- `--data` (or `-data`) — data directory holding `state.json`, the
  `configs/` directory with uploaded `.ovpn` files, and per-tunnel
  `tunN.pid` and `tunN.log` files (default `/etc/vpnctl`)

On start vpnctl creates the data and `configs/` directories, finds the
`openvpn` binary (see below), loads its state, starts the monitoring loops,
re-arms the kill switch if it is enabled in the settings, loads scheduled
jobs, reconnects every tunnel that has auto-reconnect turned on, looks up
the external IP and then serves HTTP until interrupted. `main` returns `1`
when a directory cannot be created, openvpn cannot be found or the server
cannot bind its port.

### Finding openvpn

`vpnctl.binaries.ensure_openvpn(data_dir)` returns the binary path and a
library directory (`<data>/lib`). It uses `openvpn` from `PATH` if there is
one, else an executable `<data>/openvpn` left by an earlier run, else it
unpacks `.deb` files from the package's `embed/` directory with `dpkg-deb`
and copies the `openvpn` binary and its `libpkcs11*`/`libssl*` libraries
into the data directory. `BinaryNotFoundError` is raised if none of this
yields a binary. `check_xray()` raises the same error when `xray` is not on
`PATH`.

## HTTP API

`vpnctl.web.WebServer` is a WSGI application. Endpoints answer JSON unless
noted; errors come back as `{"error": "..."}` with status 400, 404, 405 or
500. Query indexes that are missing or not integers give 400.

| Path | Method | Purpose |
|------|--------|---------|
| `/api/stats` | any | Tunnels, logs, settings, cron jobs, traffic history, start time, external IP, kill switch state, groups |
| `/api/tunnels` | any | List tunnels |
| `/api/tunnels/upload` | POST | Upload `.ovpn` files (multipart field `config`) |
| `/api/tunnels/import` | POST | `{"url": ...}` — download a config (at most 1 MiB) |
| `/api/tunnels/start?index=N` | any | Start a tunnel |
| `/api/tunnels/stop?index=N` | any | Stop a tunnel |
| `/api/tunnels/restart?index=N` | any | Restart a tunnel in the background |
| `/api/tunnels/delete?index=N` | POST, DELETE | Remove a tunnel and its config; later tunnels are renumbered |
| `/api/tunnels/autoreconnect?index=N&enabled=true` | any | Toggle reconnecting |
| `/api/tunnels/settings?index=N` | GET, other | Read or replace protocol, compression, bandwidth, group, note |
| `/api/tunnels/config?index=N` | GET, other | Read or replace the raw `.ovpn` file (`content`, optional `note`) |
| `/api/tunnels/speedtest?index=N`, `/api/tunnels/speedtest/all` | any | Run speed tests in the background |
| `/api/tunnels/mtu?index=N`, `/api/tunnels/mtu/all` | any | Detect MTU in the background |
| `/api/settings` | GET, other | Read or replace global settings; arms or disarms the kill switch to match |
| `/api/cron` | any | List scheduled jobs |
| `/api/cron/add` | POST | `{"expression", "target", "action"}` |
| `/api/cron/delete?id=N` | any | Delete a job (404 if unknown) |
| `/api/logs` | any | Event log, newest first (at most 300 entries) |
| `/api/logs/clear` | POST | Clear the log |
| `/api/killswitch/arm`, `/api/killswitch/disarm` | POST | Kill switch |
| `/api/ipcheck` | any | Start an external IP lookup; returns the current IP |
| `/api/webhook/test` | POST | Send a test webhook |
| `/api/groups` | GET, other | Read or replace the list of tunnel groups |
| `/api/backup` | any | Zip of `state.json` and all `configs/*.ovpn` (`vpnctl-backup-YYYY-MM-DD.zip`) |
| `/api/restore` | POST | Restore from a backup (multipart field `backup`); restart vpnctl to apply |

Any other path serves `vpnctl/static/index.html`.

## Scheduled jobs

A job has a five-field expression `minute hour day-of-month month day-of-week`,
a target (`tun0`, `tun1`, … or `all`) and an action (`restart`, `start` or
`stop`; `restart` when left empty). Only minute, hour and day-of-week are
matched; day-of-month and month are accepted but ignored. Each matched field
may be `*`, `*/N`, a range `A-B`, a list `A,B,C` or a number. Due jobs are
checked every 15 seconds.

```
{"expression": "0 4 * * *", "target": "all", "action": "restart"}
```

## Monitoring

`vpnctl.monitor.Monitor` refreshes traffic counters every 2 seconds, pings
connected tunnels at the configured interval, runs speed tests at the
configured interval, and every minute restarts connected tunnels whose
speed test (less than 10 minutes old) is below the threshold, up to
`max_per_hour` restarts per tunnel per hour. Restarts of slow tunnels are
posted to the webhook URL when webhooks are enabled.

A tunnel using UDP that fails three times in a row is started over TCP when
`auto_switch_tcp` is on.

## Using it as a library

```python
from vpnctl.state import AppState
from vpnctl.cron import CronError, next_cron_run, validate_cron
from vpnctl.netprobe import parse_ping_output
from vpnctl.killswitch import build_rules

state = AppState("/tmp/vpnctl")
state.load()
state.add_log("info", "hello")
state.save()

validate_cron("*/15 * * * *")          # raises CronError on a bad expression

ping_ms, loss = parse_ping_output(
    "4 packets transmitted, 4 received, 0% packet loss, time 3004ms\n"
    "rtt min/avg/max/mdev = 12.3/14.5/16.7/1.2 ms\n"
)

rules = build_rules(allow_lan=True)    # iptables arguments for the chain
```

`vpnctl.backup` offers `create_backup(data_dir)` and
`restore_backup(data_dir, data)` for the same archives the API uses.

## What it does not include

- The web page itself: `vpnctl/static/index.html` is not part of the
  package, so `/` and other non-API paths answer with an empty HTML body.
  The JSON API works without it.
- Bundled OpenVPN packages: the `embed/` directory holds no `.deb` files, so
  `openvpn` must be installed on `PATH` (or left as an executable
  `<data>/openvpn`); otherwise `vpnctl` exits with an error.

## Tests

```
pip install .[test]
pytest
```