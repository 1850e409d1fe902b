# chanrelay

`chanrelay` is the core of a channel-based message relay for networked
games and chat-style applications. Connections (game servers and clients)
subscribe to channels; messages put into a channel are handled during that
channel's tick and can be fanned out to its subscribers according to a
broadcast mask.

It uses only the standard library.

## Modules

### `chanrelay.auth`

- `AuthProvider`: abstract base with `do_auth(conn_id, pit, lt)` returning
  an `AuthResult` (`SUCCESSFUL`, `INVALID_PIT`, `INVALID_LT`).
- `LoggingAuthProvider(logger=None, msg="")`: accepts everyone, logging
  the attempt when a logger is given.
- `AlwaysFailAuthProvider`: always returns `INVALID_PIT`.
- `FixedPasswordAuthProvider(password)`: `SUCCESSFUL` when the login token
  equals the password, otherwise `INVALID_LT`.
- `set_auth_provider(value)` / `get_auth_provider()`: install and read
  back the process-wide provider (`None` when unset). Anything that is not
  an `AuthProvider` or `None` raises `TypeError`.

### `chanrelay.channel`

- `ChannelRegistry(settings=None)` creates the GLOBAL channel on
  construction (available as `global_channel`), then hands out channel ids
  with `create_channel(channel_type, owner)`: SPATIAL channels from
  `RegistrySettings.spatial_channel_id_start` up to
  `entity_channel_id_start - 1`, all other types from the range below the
  spatial start. A used-up range raises `ChannelFullError`; creating a
  second GLOBAL channel raises `ValueError`. `remove_channel` frees the id,
  `get_channel` looks one up, and `has_authority_over(conn, channel)` is
  true for the channel's owner or the GLOBAL channel's owner. Listener
  lists `on_channel_created`, `on_channel_removing`, `on_channel_removed`
  and `on_global_unpossessed` are called on those events.
- `Channel` queues work with `put_message(ctx, handler)` and
  `execute(callback)`, and processes it in `tick()` (or continuously with
  `run(stop)` at the configured tick interval). Messages whose context has
  no connection are dropped. A tick also removes subscribers that are
  closing; if the owner closes and the channel type's settings ask for it,
  the channel is removed through the GLOBAL channel.
- `broadcast(ctx)` sends to every subscriber except those excluded by the
  `BroadcastType` flags `ALL_BUT_SENDER`, `ALL_BUT_OWNER`,
  `ALL_BUT_CLIENT` and `ALL_BUT_SERVER`. `subscribe`, `unsubscribe`,
  `get_all_connections`, `has_owner`, `is_same_owner` and `send_to_owner`
  manage and query subscribers and ownership.
- `check_acl(conn, access_type)` applies the `ChannelAccessLevel`
  configured in `ChannelSettings.acl_settings` for the channel type
  (`NONE` when the type has no settings). It returns `True` or raises
  `NoneAccessError`, `OwnerOnlyAccessError`,
  `OwnerAndGlobalOwnerAccessError` or `IllegalAccessLevelError`, all
  subclasses of `AccessDenied`.
- `add_ms(t, ms)` and `offset_ms(t, ms)` shift a channel time, which is in
  nanoseconds since the channel was created (`Channel.get_time()`).

### `chanrelay.framing`

Every frame is a five-byte header (`C`, `H`, big-endian 16-bit body size,
`CompressionType` byte) followed by the body, at most `MAX_PACKET_SIZE`
(65535) bytes.

- `read_size(tag)` returns the body size, or 0 when the header does not
  start with `CH`.
- `encode_frame(body, compression)` builds a frame, Snappy-compressing the
  body for `CompressionType.SNAPPY`; an oversized body raises `FrameError`.
- `FrameDecoder.feed(data)` accepts bytes in arbitrary fragments and
  returns the bodies of all complete frames, decompressed. A bad header,
  an oversized size or corrupt Snappy data raises `FrameError`, whose
  `frames` attribute holds the bodies decoded before the error.
  `compression` follows the last compressed frame seen; `reset()` drops
  buffered bytes and `pending` counts them.
- `snappy_encode` / `snappy_decode` implement the Snappy block format.

### `chanrelay.connection`

- `MessagePack` (channel id, broadcast, stub id, message type, body) with
  `encode()` / `decode()`.
- `Connection` wraps a transport with `read(size)`, `write(data)` and
  `close()`. `send` queues a `MessagePack` (or a message context whose
  `msg` is bytes or has `to_bytes()`); `flush` batches queued packs into
  one frame, leaving the rest for the next flush if it would be oversized;
  `receive` reads once and calls the `on_message` callback for each
  decoded pack, closing the connection at end of stream, on read errors or
  on a framing error. `close` runs the close handlers once;
  `on_authenticated(pit)` marks the connection authenticated; `start()`
  runs the receive and flush loops in background threads.
- `ConnectionRegistry` assigns ids (sequential with `development=True`,
  otherwise hashed from the remote address and the clock, masked to
  `max_connection_id_bits`), tracks open connections and, when
  `auth_timeout_ms` is set, the unauthenticated ones.
- `is_origin_trusted(remote_addr, trusted_origins)` and
  `split_websocket_address(address)` help when accepting WebSocket
  connections.

### `chanrelay.merge`

Merge rules for channel data updates, steered by `MergeOptions`
(`should_replace_list`, `list_size_limit`, `truncate_top`):
`merge_chat_capped`, `merge_chat_with_time_span` (keeps messages beyond
the limit while they are newer than `time_span_limit` seconds),
`merge_test_message` and `merge_tank_game_data` (calls the notifier when a
tank's x or z position changes). A `src` of the wrong type raises
`TypeError`.

## Example

```python
from chanrelay.framing import FrameDecoder, encode_frame, read_size

frame = encode_frame(b"hello")
assert frame == b"CH\x00\x05\x00hello"
assert read_size(frame[:5]) == 5

decoder = FrameDecoder()
assert decoder.feed(frame[:3]) == []
assert decoder.feed(frame[3:]) == [b"hello"]
```

## What it does not do

There is no command-line program and no network listener: the package does
not open TCP, KCP or WebSocket servers, so accepting sockets and handing
them to `ConnectionRegistry.add_connection` is up to the application. It
has no protocol message handlers (auth, create/remove channel, subscribe),
no per-connection state machine, no metrics export and no replay
recording. Message bodies are carried as opaque bytes.

## Running the tests

```
pip install -e ".[test]"
pytest
```