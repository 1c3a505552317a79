# filmessager

A library for running a message service in front of a Filecoin-style chain
node. It accepts unsigned messages and assigns their nonces. It merges the gas
settings, asks the node to estimate gas, and has a wallet sign each message.
It then publishes the signed messages to one or more nodes. It also follows
the chain head and records when messages land on chain, are replaced by a
conflicting message with the same nonce, or are reverted.

The package uses only the Python standard library (3.10 or newer).

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

### `filmessager.models`

This module holds the data types:

- `ChainMessage` is an unsigned message. `SignedMessage` is a message together
  with its signature. `Message` is a message as the service tracks it, with
  its id, state, cids, signature, height, receipt and confidence.
- `AddressInfo` holds a sender address with its nonce and fee settings.
- `SharedSpec` holds the global fee settings. `SendSpec` holds the gas options
  of a single message.
- `TipSet` has `key()`, `to_dict()` and `from_dict()`.
- `Node`, `MessageReceipt` and `MessageServiceConfig` are further data types.
  `MessageServiceConfig` holds timeouts in seconds, the skip flags and the
  stable-head wait.
- `MessageState` and `AddressState` are enums.
- `RecordNotFoundError` is the error a repository raises when a record is
  missing.
- `is_id_address(address)` tells whether an address is an ID address such as
  `f01234`.
- `default_shared_params()` returns the built-in defaults: a gas
  over-estimation of 1.25, a max fee of 0.07 FIL and 20 messages per
  selection round.

`ChainMessage.cid()` and `SignedMessage.cid()` return a SHA-256 hex digest of
a canonical JSON form of the message. They are stable identifiers within this
package. They are not real chain CIDs.

### `filmessager.publisher`

This module has publishers that send signed messages out. Each one has a
`publish_messages(msgs)` method.

- `RpcPublisher(node_client, node_provider=None, enable_multi_node=False, dial=None)`
  pushes every batch to the main node from a background thread, using
  `mpool_batch_push_untrusted`.
  - With multi-node publishing on, it also pushes to every node that
    `node_provider.list_node()` returns. Each node is connected with
    `dial(url, token)`.
  - Pushers for nodes that are no longer listed are closed.
  - Push errors for "minimum expected nonce" and "already in mpool" are
    logged at debug level only.
- `P2pPublisher(pubsub, network_name)` publishes each message on the topic
  `/fil/msgs/<network_name>`. The topic comes from `pubsub.get_topic()`.
- `MergePublisher(*publishers)` hands each batch to every sub-publisher and
  logs any failures. It raises `ValueError` when it has no sub-publishers.
  `add_publisher()` adds one more.
- `ConcurrentPublisher(sub_publisher, concurrency)` queues batches and
  publishes them from `concurrency` worker threads.
- `CachePublisher(sub_publisher, release_period)` drops messages it has
  already published. A cid stays known for between one and two release
  periods, given in seconds.
- `build_publisher(config, block_delay_secs, rpc_publisher, p2p_publisher=None)`
  assembles the publishers from a `PublisherConfig`:
  1. A merge of the RPC publisher and, if enabled, the p2p publisher.
  2. Wrapped in a concurrent publisher when `concurrency > 0`.
  3. Wrapped in a cache publisher. Its period is `block_delay_secs // 3`
     (at least 1) when `cache_release_period` is 0, or `cache_release_period`
     when that is positive.
- `MessageReceiver(publisher, maxsize=100)` is a bounded inbox. `put(msgs)`
  raises `queue.Full` when the inbox is full. Each batch is split with
  `group_by_address()`, sorted by nonce, and published one sender at a time.

The threaded classes have `close()` and can be used as context managers.

### `filmessager.cache`

`TipsetCache` keeps tipsets by height, together with the current height and
the network name.

- `save(path)` writes the cache as JSON. It first drops tipsets more than 900
  below the current height once 900 or more are stored.
- `load(path)` reads the file back. A missing file is ignored.

### `filmessager.address_service`, `filmessager.node_service`, `filmessager.shared_params`

- `AddressService` manages sender addresses through a repository. Its methods
  are:
  - `save_address`, `get_address`, `has_address`, `list_address`,
    `list_active_address`, `delete_address`;
  - `update_nonce`, `forbid_address`, `activate_address`,
    `set_select_msg_num`;
  - `set_fee_params`, which takes the amounts as decimal strings and raises
    `AddressNotExistsError` for an unknown address;
  - `active_addresses`;
  - `accounts_of_signer`, which asks the auth client;
  - `wallet_has`.
- `NodeService(repo, dial=None)` saves, gets, lists and deletes nodes. When a
  `dial` function is given, it tries to connect to a node before saving it.
- `SharedParamsService(repo)` reads and writes the shared fee settings. If
  none are stored yet, it stores the defaults.

### `filmessager.timeouts`

`call_with_timeout(timeout, func, *args)` runs the call in a daemon thread and
returns its result or re-raises its exception. If the call takes longer than
`timeout`, it raises `CallTimeoutError`.

### `filmessager.selector`

`MsgSelectMgr` runs selection rounds. `select_message(ts)` starts one round
per active address in its own thread and returns the threads. Only one round
per address runs at a time. In a round, `select_for_address` does the
following:

1. Brings the address nonce up to the chain nonce.
2. Gathers the already-filled messages to push again.
3. Takes up to `min(2 × wanted, 100)` unchained messages.
4. Skips messages whose base-fee limit is below the chain's base fee.
5. Estimates gas in one batch and signs each message with the wallet.
6. Stores the results and passes the signed messages to the receiver.

Helper functions:

- `merge_msg_spec` picks, for each setting, the message's own value, then the
  address's, then the shared one.
- `cap_gas_fee` lowers the fee cap, and the premium with it, so that
  fee cap × gas limit stays within the max fee.
- `addr_select_msg_num`, `address_map` and `nonce_in_tipset` are smaller
  helpers used by the round.

### `filmessager.head_tracking`

- `look_ancestors(node_client, local_tipsets, head)` walks back from a new
  head to the local chain. It looks back at most 900 steps and returns the
  missing tipsets and the local tipsets to revert.
- `StateRefresher.refresh(change)` applies a `HeadChange`:
  - Messages in reverted tipsets go back to the filled state.
  - Applied messages are marked on chain, or as nonce conflicts when another
    message with the same sender and nonce was included.
  - The tipset cache is updated and saved.
  - After a change that is not a reconnect, a trigger is called once the head
    has been stable for the configured time.
- `NodeEvents.listen_head_changes_once()` reads `client.chain_notify()`. It
  expects a single `"current"` change first and passes it to
  `reconnect_check`. For each later notification it passes the `"apply"`
  tipsets to `process_new_head`.

### `filmessager.message_service`

`MessageService` is the main entry point. When it is created, it loads the
tipset file. It then checks that the file's network name matches
`state_network_name()`; if the file has no name yet, it writes one. It offers:

- **Pushing messages:**
  - `push_message(msg, meta=None, account="")` and `push_message_with_id`.
    These change an ID sender to its key address, check that a wallet holds
    the key, add unknown senders, and refuse forbidden ones with
    `PermissionError`.
  - `send(params)` takes a `QuickSendParams` whose parameters are hex, or
    JSON encoded through the `params_encoder` given to the service.
- **Looking messages up:** `get_message_by_uid`, `get_message_by_cid`,
  `get_message_by_signed_cid`, `get_message_by_from_and_nonce`,
  `has_message_by_uid`, `list_message`, `list_message_by_address` and
  `list_blocked_message`. Messages seen on chain carry a confidence equal to
  the head height minus their height.
- **Waiting:** `wait_message(msg_id, confidence, timeout=None)` polls once per
  block delay (30 s when the delay is unknown). It returns when the message is
  deeper than `confidence` on chain or has failed.
- **Following the chain:** `process_new_head`, `reconnect_check` and
  `update_all_filled_message`.
- **Fixing messages:**
  - `replace_message(ReplaceMessageParams)` re-prices the message, either
    automatically or with the values given, then re-signs and republishes it.
    In automatic mode the new premium is at least `compute_min_rbf` of the old
    one, which is +25 % plus one.
  - `republish_message` publishes a filled message again.
  - `recover_failed_msg` returns failed signed messages whose nonce is still
    usable to the filled state.
  - `clear_unfill_message` marks every unfilled message of an address as
    failed.

## Collaborators

Every outside system is passed in as an object. Any object with the methods
the code calls will do, such as a real client or a test double. The objects
are:

- a repository with `address_repo`, `message_repo`, `shared_params_repo` and
  a `transaction()` context manager;
- a chain node client;
- a wallet client with `wallet_has` and `wallet_sign`;
- an auth client with `get_user_by_signer`;
- for p2p publishing, a pubsub object with `get_topic`.

## What the package does not do

- It has no command-line program and no RPC server. It is a library only.
- It has no database of its own. Storage is whatever repository object you
  pass in.
- It has no network code of its own. It does not provide a chain-node RPC
  client, a libp2p/pubsub host, or a wallet. Dialling extra nodes needs a
  `dial` function that you supply.
- It does not encode actor method parameters from JSON. That needs a
  `params_encoder`.
- It does not record metrics.

## Example

```python
from filmessager.publisher import CachePublisher, MergePublisher, MessagePublisher

class Printer(MessagePublisher):
    def publish_messages(self, msgs):
        for msg in msgs:
            print("publish", msg.cid())

with CachePublisher(MergePublisher(Printer()), 1) as publisher:
    publisher.publish_messages(signed_messages)  # messages seen recently are skipped
```