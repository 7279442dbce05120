import pytest

from tinyimg.codec.pillow_engine import PillowCodecEngine
from tinyimg.codec.registry import (
    create_engine,
    register_codec,
    resolve_codec,
    unregister_codec,
)


class EchoEngine:
    def __init__(self, **options):
        self.options = options

    def convert(self, data):
        return data

    def start_session(self):
        return "s"

    def append_chunk(self, handle, chunk):
        return None

    def finish_session(self, handle):
        return b""

    def discard_session(self, handle):
        return None


def test_pillow_is_registered_by_default():
    assert resolve_codec("pillow") is PillowCodecEngine


def test_create_engine_passes_options():
    engine = create_engine("pillow", {"quality": 75})
    assert engine.quality == 75


def test_register_and_unregister():
    register_codec("echo-test", EchoEngine)
    try:
        engine = create_engine("echo-test", {"level": 3})
        assert engine.options == {"level": 3}
    finally:
        unregister_codec("echo-test")
    with pytest.raises(LookupError):
        resolve_codec("echo-test")


def test_import_path_reference():
    factory = resolve_codec("tinyimg.codec.pillow_engine:PillowCodecEngine")
    assert factory is PillowCodecEngine


def test_missing_module_raises_import_error():
    with pytest.raises(ImportError):
        resolve_codec("tinyimg_no_such_module:Engine")


def test_missing_attribute_raises_lookup_error():
    with pytest.raises(LookupError):
        resolve_codec("tinyimg.codec.pillow_engine:Nope")


def test_factory_must_build_an_engine():
    register_codec("not-an-engine", lambda **options: object())
    try:
        with pytest.raises(TypeError):
            create_engine("not-an-engine")
    finally:
        unregister_codec("not-an-engine")
