# modelpuller

`modelpuller` sits between a model mesh and a model serving runtime. When a
model is to be loaded, it pulls the model's files from storage into a local
directory, rewrites the load request so that it points at the local copy, and
passes it on to the runtime. When a model is unloaded, it asks the runtime to
drop it and then removes the local files.

It is a library: you supply the object that fetches files from storage and
the client that talks to the runtime.

## Modules

- `modelpuller.config`
  - `PullerConfiguration` (`root_model_dir`, `storage_configuration_dir`),
    built from the environment with `PullerConfiguration.from_env()`.
    `get_storage_configuration(storage_key)` reads the JSON object stored in
    the file named `storage_key` in the storage configuration directory.
  - `PullerServerConfiguration` (`port`, `model_server_endpoint`), built with
    `PullerServerConfiguration.from_env()`.
  - `get_env_string(name, default)` and `get_env_int(name, default)`.
  - `secure_join(root, unsafe_path)`: joins a path onto `root`, resolving
    `..` and symlinks as though `root` were the filesystem root, so the
    result never leaves `root`.
  - Problems (a missing or unparsable storage file, a non-integer `PORT`,
    too many symlinks) are raised as `ConfigError`.
- `modelpuller.dotpath`
  - `apply_parameter_overrides(params, overrides)` sets string values in a
    nested dict in place, using dotted paths such as `"nested.object.key"`.
    Missing intermediate objects are created. Overwriting a value that is not
    a string, walking through something that is not an object, or passing
    `None` as `params` raises `DotpathError` (a `ValueError`).
- `modelpuller.messages`
  - Request and response dataclasses exchanged with the runtime:
    `LoadModelRequest`, `LoadModelResponse`, `UnloadModelRequest`,
    `UnloadModelResponse`, `PredictModelSizeRequest`,
    `PredictModelSizeResponse`, `ModelSizeRequest`, `ModelSizeResponse`,
    `RuntimeStatusRequest`, `RuntimeStatusResponse`, and the `RuntimeStatus`
    enum (`STARTING`, `READY`, `FAILING`).
  - `StatusCode`, `RpcError(code, message)` carrying a status code, and
    `status_code_of(error)`, which gives `OK` for `None`, the code of an
    `RpcError`, and `UNKNOWN` for any other exception.
- `modelpuller.puller`
  - `ModelKeyInfo`: the JSON document in a request's `model_key`
    (`from_json`, `to_json`).
  - `Target`, `PullCommand` and the `PullManager` protocol, whose
    `pull(command)` must fetch every target into `command.directory`.
  - `Puller(config, pull_manager)`:
    - `process_load_model_request(request)` pulls the model and rewrites the
      request in place: `model_path` becomes the local path, the key's
      `schema_path` becomes local, `disk_size_bytes` is filled in, and
      `storage_key`, `storage_params` and `bucket` are removed from the key.
    - `model_disk_size(model_path)` totals file sizes, following symlinks.
    - `cleanup_model(model_id)`, `clear_local_model_storage(exclude)` and
      `list_models()` manage the local model directory.
    - Failures are raised as `PullerError`; a failed pull is raised as an
      `RpcError` with the pull manager's status code.
- `modelpuller.modelstate`
  - `ModelStateManager(handler, queue_length=25)` runs load and unload
    requests through a `ModelHandler`. Requests for one model id run one at a
    time in submission order; different models run in parallel threads.
  - `load_model`, `unload_model` and `submit_request` take an optional
    `timeout` in seconds. A full per-model queue, a timeout, a closed manager
    or an unknown request type raises `ModelStateError`; errors from the
    handler propagate to the caller.
  - `active_models()` lists model ids with work pending; `close()` refuses
    new requests and waits for queued ones. It is also a context manager.
- `modelpuller.server`
  - `ModelRuntimeClient`: protocol for the runtime client (`load_model`,
    `unload_model`, `predict_model_size`, `model_size`, `runtime_status`).
  - `PullerServer(puller, runtime_client, config=None)`:
    - `load_model(request, timeout=None)` pulls, then loads in the runtime.
    - `unload_model(request, timeout=None)` unloads in the runtime (a
      `NOT_FOUND` error is tolerated) and then deletes the local files.
    - `predict_model_size` and `model_size` pass straight through.
    - `runtime_status(request)`: when the runtime reports `READY`, it first
      calls `unload_all()`, which unloads and deletes every local model whose
      name does not start with `_`; an error there is raised.
    - `close()`; also usable as a context manager.

## Storage configuration

A model key may name a `storage_key`; if that file is missing, the load
fails. Without one, the puller looks for `default`, or `default_<type>` when
the request's `storage_params` carry a `type`, and starts from an empty
configuration if that file is missing. A top-level `bucket` in the model key
replaces the configured `bucket` when one is configured. The `storage_params`
are then applied as dotted-path overrides. If no `type` is known after that,
`PullerError("Predictor Storage field missing")` is raised. For `s3` storage,
a `default_bucket` is copied to `bucket` when no `bucket` is given.

## Environment

| Variable                | Default           | Used by                      |
|-------------------------|-------------------|------------------------------|
| `ROOT_MODEL_DIR`        | `/models`         | `PullerConfiguration`        |
| `STORAGE_CONFIG_DIR`    | `/storage-config` | `PullerConfiguration`        |
| `PORT`                  | `8084`            | `PullerServerConfiguration`  |
| `MODEL_SERVER_ENDPOINT` | `port:8085`       | `PullerServerConfiguration`  |

## Example

```python
from modelpuller.config import PullerConfiguration, PullerServerConfiguration
from modelpuller.messages import LoadModelRequest, LoadModelResponse
from modelpuller.puller import Puller


class MyPullManager:
    def pull(self, command):
        ...  # fetch command.targets into command.directory


class MyRuntimeClient:
    def load_model(self, request):
        return LoadModelResponse()

    # unload_model, predict_model_size, model_size and runtime_status
    # forward to the serving runtime in the same way


from modelpuller.server import PullerServer

puller = Puller(PullerConfiguration.from_env(), MyPullManager())
with PullerServer(puller, MyRuntimeClient(), PullerServerConfiguration.from_env()) as server:
    request = LoadModelRequest(
        model_id="my-model",
        model_path="models/my-model",
        model_type="mt:tensorflow",
        model_key='{"model_type": {"name": "tensorflow"}, "storage_key": "myStorage"}',
    )
    response = server.load_model(request, timeout=30.0)
```

## What it does not do

- It opens no network port and has no command to run: `PullerServer` is an
  object whose methods you call from your own service. `port` and
  `model_server_endpoint` in `PullerServerConfiguration` are only read from
  the environment and stored.
- It fetches nothing from storage by itself: there is no built-in
  `PullManager` for any storage type.
- It contains no client for a model runtime: a `ModelRuntimeClient` must be
  supplied.