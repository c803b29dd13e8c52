# rfmpd

`rfmpd` is a daemon for RFMP, a small mesh messaging protocol that runs over
AX.25 packet radio. It talks to a KISS TNC such as Direwolf over TCP, receives
and relays messages on named channels, splits large messages into fragments,
and keeps nodes in step by exchanging state vectors (SVEC frames). Messages,
the transmission queue, the seen cache and node and channel statistics are kept
in a SQLite database.

## Installing

```
pip install .
```

## Running

```
rfmpd -c /etc/rfmpd/config.yaml
```

Options:

- `-c PATH`: configuration file. Without it, `./config.yaml`,
  `~/.config/rfmpd/config.yaml` and `/etc/rfmpd/config.yaml` are tried in turn;
  if none is found the built-in defaults are used.
- `-v`: debug logging (otherwise the level comes from `logging.level`).
- `-version` / `--version`: print the version and exit.
- `-sim` / `--sim`: connect to an RF simulator broker on `127.0.0.1` instead of
  Direwolf (this also turns off offline mode).
- `-sim-port PORT` / `--sim-port PORT`: port of the simulator broker
  (default 8055).

Stop the daemon with Ctrl-C or SIGTERM. The command exits with status 1 if the
configuration cannot be loaded, the log or database directory cannot be
created, or the database cannot be opened.

While running, the daemon:

- relays each new message it hears (other than its own) after a random delay;
- reassembles fragmented messages;
- answers a state vector by re-queuing the messages the other node lacks;
- broadcasts its own state vector every `sync.sync_interval` seconds;
- every five minutes clears old entries from the seen cache, the transmission
  queue and the stored fragments.

## Configuration

A YAML file; every key is optional.

```yaml
node:
  callsign: "N0CALL"
  ssid: 0
network:
  direwolf_host: "127.0.0.1"
  direwolf_port: 8001
  reconnect_interval: 5
  offline_mode: false
protocol:
  fragment_threshold: 200
timing:
  base_delay: 0.2
  jitter: 0.4
sync:
  sync_interval: 60
storage:
  database_path: "/var/lib/rfmpd/messages.db"
api:
  host: "0.0.0.0"
  port: 8080
  cors_origins: ["*"]
logging:
  level: "INFO"
  file: "~/rfmpd/rfmpd.log"
  max_size: 10485760
  backup_count: 5
```

A leading `~` in `database_path` and `logging.file` expands to the home
directory. When `logging.file` is set, the log is also written there through
`rfmpd.cli.RotatingWriter`, which rotates the file once it would pass
`max_size` bytes and keeps `backup_count` old copies (`file.1`, `file.2`, ...).
With `offline_mode: true` the daemon does not connect to the TNC.

## Using the library

```python
from datetime import datetime, timezone

from rfmpd.frames import Msg
from rfmpd.message import generate_message_id, to_epoch
from rfmpd.parser import encode, decode

now = datetime.now(timezone.utc).replace(microsecond=0)
msg = Msg(
    id=generate_message_id("N0CALL", to_epoch(now), "Hello world"),
    from_node="N0CALL",
    time=now,
    channel="general",
    body="Hello world",
)
wire = encode(msg)
assert decode(wire).body == "Hello world"
```

The modules:

- `rfmpd.message`: message IDs, timestamps and the `FrameError` types.
- `rfmpd.frames`: the `Msg`, `Frag` and `Svec` frames and their dict forms.
- `rfmpd.parser`: `encode`, `decode`, `encode_msg_raw`, `decode_msg_raw`.
- `rfmpd.fragmentation`: `Fragmenter` and `FragmentCollector`.
- `rfmpd.kiss` and `rfmpd.ax25`: KISS framing and AX.25 UI frames.
- `rfmpd.direwolf`: `DirewolfClient`, the TCP KISS client.
- `rfmpd.storage`: `Database`, the SQLite store.
- `rfmpd.timing`: `Timing`, randomised transmit delays.
- `rfmpd.config`: `load`, `default_config` and the `Config` dataclasses.
- `rfmpd.daemon`: `Daemon`, which ties the pieces together; its
  `send_message`, `get_stats`, `set_callsign` and `save_config` methods are
  meant for a front end.

## What it does not do

There is no HTTP or WebSocket API and no web interface. The `api` section of
the configuration is read and saved but nothing listens on that host and port.
To send messages or show received ones, embed `rfmpd.daemon.Daemon` and call
`send_message`, and pass an object with a `broadcast_message(data)` method to
`Daemon.set_api_server` to be told of new messages.