import json
import os

import pytest

from modelpuller.config import PullerConfiguration
from modelpuller.messages import (
    LoadModelRequest,
    LoadModelResponse,
    ModelSizeRequest,
    ModelSizeResponse,
    PredictModelSizeRequest,
    PredictModelSizeResponse,
    RpcError,
    RuntimeStatus,
    RuntimeStatusRequest,
    RuntimeStatusResponse,
    StatusCode,
    UnloadModelRequest,
    UnloadModelResponse,
)
from modelpuller.puller import Puller
from modelpuller.server import PullerServer


class RecordingPullManager:
    def __init__(self, error=None):
        self.commands = []
        self.error = error

    def pull(self, command):
        self.commands.append(command)
        if self.error is not None:
            raise self.error


class MockRuntimeClient:
    def __init__(self):
        self.loaded = []
        self.unloaded = []
        self.load_error = None
        self.unload_error = None
        self.status = RuntimeStatus.READY

    def load_model(self, request):
        self.loaded.append(LoadModelRequest(**vars(request)))
        if self.load_error is not None:
            raise self.load_error
        return LoadModelResponse(size_in_bytes=7)

    def unload_model(self, request):
        self.unloaded.append(request.model_id)
        if self.unload_error is not None:
            raise self.unload_error
        return UnloadModelResponse()

    def predict_model_size(self, request):
        return PredictModelSizeResponse(size_in_bytes=123)

    def model_size(self, request):
        return ModelSizeResponse(size_in_bytes=456)

    def runtime_status(self, request):
        return RuntimeStatusResponse(status=self.status, runtime_version="1.0")


@pytest.fixture
def setup(tmp_path):
    root = tmp_path / "models"
    root.mkdir()
    storage = tmp_path / "storage-config"
    storage.mkdir()
    (storage / "myStorage").write_text(
        json.dumps({"type": "s3", "bucket": "bucket0", "region": "us-south"})
    )
    (root / "singlefile").mkdir()
    (root / "singlefile" / "model.zip").write_bytes(b"x" * 60)
    (root / "multifile" / "model").mkdir(parents=True)
    (root / "multifile" / "model" / "a.bin").write_bytes(b"a" * 20)
    (root / "multifile" / "model" / "b.bin").write_bytes(b"b" * 40)

    config = PullerConfiguration(
        root_model_dir=str(root), storage_configuration_dir=str(storage)
    )
    manager = RecordingPullManager()
    client = MockRuntimeClient()
    server = PullerServer(Puller(config, manager), client)
    yield server, client, manager, root
    server.close()


@pytest.mark.parametrize(
    "model_id, input_model_path",
    [("singlefile", "model.zip"), ("multifile", "model")],
)
def test_load_model(setup, model_id, input_model_path):
    server, client, manager, root = setup
    request = LoadModelRequest(
        model_id=model_id,
        model_path=input_model_path,
        model_type="mt:tensorflow",
        model_key='{"model_type": {"name": "tensorflow"}, "storage_key": "myStorage", "bucket": "bucket1"}',
    )

    response = server.load_model(request, timeout=3)

    assert response == LoadModelResponse(size_in_bytes=7)
    assert len(manager.commands) == 1
    command = manager.commands[0]
    assert command.storage_type == "s3"
    assert command.storage_config["bucket"] == "bucket1"
    assert command.directory == os.path.join(str(root), model_id)
    assert client.loaded == [
        LoadModelRequest(
            model_id=model_id,
            model_path=os.path.join(str(root), model_id, input_model_path),
            model_type="mt:tensorflow",
            model_key='{"model_type":{"name":"tensorflow"},"disk_size_bytes":60}',
        )
    ]


def test_load_model_runtime_error_keeps_code(setup):
    server, client, _, _ = setup
    client.load_error = RpcError(StatusCode.INTERNAL, "boom")
    request = LoadModelRequest(
        model_id="singlefile",
        model_path="model.zip",
        model_key='{"storage_key": "myStorage"}',
    )
    with pytest.raises(RpcError, match="model runtime error") as info:
        server.load_model(request)
    assert info.value.code == StatusCode.INTERNAL


def test_load_model_pull_error_is_not_sent_to_runtime(setup):
    server, client, manager, _ = setup
    manager.error = RpcError(StatusCode.NOT_FOUND, "missing")
    request = LoadModelRequest(
        model_id="singlefile",
        model_path="model.zip",
        model_key='{"storage_key": "myStorage"}',
    )
    with pytest.raises(RpcError) as info:
        server.load_model(request)
    assert info.value.code == StatusCode.NOT_FOUND
    assert client.loaded == []


def test_unload_not_found_still_cleans_up(setup):
    server, client, _, root = setup
    client.unload_error = RpcError(StatusCode.NOT_FOUND, "no such model")
    response = server.unload_model(UnloadModelRequest(model_id="singlefile"))
    assert response == UnloadModelResponse()
    assert not (root / "singlefile").exists()


def test_unload_runtime_failure_keeps_files(setup):
    server, client, _, root = setup
    client.unload_error = RpcError(StatusCode.UNAVAILABLE, "down")
    with pytest.raises(RpcError, match="Failed to unload model from runtime") as info:
        server.unload_model(UnloadModelRequest(model_id="singlefile"))
    assert info.value.code == StatusCode.UNAVAILABLE
    assert (root / "singlefile").exists()


def test_passthrough_calls(setup):
    server, _, _, _ = setup
    assert server.predict_model_size(
        PredictModelSizeRequest(model_id="m")
    ) == PredictModelSizeResponse(size_in_bytes=123)
    assert server.model_size(ModelSizeRequest(model_id="m")) == ModelSizeResponse(
        size_in_bytes=456
    )


def test_runtime_status_ready_unloads_all_but_excluded(setup):
    server, client, _, root = setup
    (root / "_keep").mkdir()
    response = server.runtime_status(RuntimeStatusRequest())
    assert response.status == RuntimeStatus.READY
    assert response.runtime_version == "1.0"
    assert sorted(client.unloaded) == ["multifile", "singlefile"]
    assert server.puller.list_models() == ["_keep"]


def test_runtime_status_not_ready_leaves_models(setup):
    server, client, _, _ = setup
    client.status = RuntimeStatus.STARTING
    response = server.runtime_status(RuntimeStatusRequest())
    assert response.status == RuntimeStatus.STARTING
    assert client.unloaded == []
    assert server.puller.list_models() == ["multifile", "singlefile"]


def test_runtime_status_unload_failure_raises(setup):
    server, client, _, _ = setup
    client.unload_error = RpcError(StatusCode.INTERNAL, "broken")
    with pytest.raises(RpcError) as info:
        server.runtime_status(RuntimeStatusRequest())
    assert info.value.code == StatusCode.INTERNAL
    assert server.puller.list_models() == ["multifile", "singlefile"]


def test_unload_all_ignores_not_found(setup):
    server, client, _, _ = setup
    client.unload_error = RpcError(StatusCode.NOT_FOUND, "gone")
    server.unload_all()
    assert server.puller.list_models() == []