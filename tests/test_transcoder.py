import asyncio
import os
import shlex
import subprocess
import threading

import discord
import pytest

from tunecast.config import FFMPEG_STREAM_OPTIONS, FRAME_SIZE
from tunecast.errors import SourceUnavailable
from tunecast.transcoder import SourceSpec, Transcoder, build_ffmpeg_options

pytestmark = pytest.mark.anyio


class FakeStdin:
    def __init__(self, process):
        self.process = process
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        if self.process.killed:
            raise BrokenPipeError()
        self.data.extend(data)
        return len(data)

    def close(self):
        self.closed = True
        self.process.finish()


class FakePopen:
    """
    Looks like subprocess.Popen. stdout is a real pipe; with hold=True it
    stays open until kill() or stdin is closed.
    """

    def __init__(self, stdout: bytes = b"", *, exit_code: int = 0, hold: bool = False):
        read_fd, self._write_fd = os.pipe()
        os.write(self._write_fd, stdout)
        self.stdout = os.fdopen(read_fd, "rb")
        self.stdin = FakeStdin(self)
        self.stderr = None
        self.pid = 4242
        self.returncode = None
        self.killed = False
        self._exit_code = exit_code
        self._lock = threading.Lock()
        self._done = threading.Event()
        if not hold:
            self.finish()

    def finish(self):
        with self._lock:
            if self._done.is_set():
                return
            os.close(self._write_fd)
            self.returncode = self._exit_code
            self._done.set()

    def kill(self):
        self.killed = True
        self._exit_code = -9
        self.finish()

    terminate = kill

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._done.wait(timeout):
            raise subprocess.TimeoutExpired("ffmpeg", timeout)
        return self.returncode

    def communicate(self, *args, **kwargs):
        self.wait()
        return b"", b""


class FakeSpawn:
    def __init__(self, process=None, error=None):
        self.process = process
        self.error = error
        self.args = None
        self.kwargs = None

    def __call__(self, args, **kwargs):
        self.args = args
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return self.process


async def chunks_of(*parts):
    for part in parts:
        yield part


def option_after(options: str, flag: str) -> str:
    parts = shlex.split(options)
    return parts[parts.index(flag) + 1]


class TestFfmpegOptions:
    def test_local_file_with_trim(self):
        before, options = build_ffmpeg_options(SourceSpec(path="/cache/abc", seek_seconds=10, to_seconds=100))
        assert option_after(before, "-ss") == "10"
        assert option_after(before, "-to") == "100"
        assert "-reconnect" not in before
        assert "-vn" in shlex.split(options)

    def test_fractional_seek(self):
        before, _ = build_ffmpeg_options(SourceSpec(path="/x", seek_seconds=2.5))
        assert option_after(before, "-ss") == "2.500"

    def test_no_seek_when_zero(self):
        before, _ = build_ffmpeg_options(SourceSpec(path="/x", seek_seconds=0))
        assert "-ss" not in before
        assert "-to" not in before

    def test_live_url(self):
        before, _ = build_ffmpeg_options(SourceSpec(url="https://media.example/live.m3u8", is_live=True))
        assert FFMPEG_STREAM_OPTIONS in before
        assert "-re" in shlex.split(before)

    def test_volume_filter(self):
        _, options = build_ffmpeg_options(SourceSpec(path="/x", volume_filter="0.5"))
        assert option_after(options, "-filter:a") == "volume=0.5"

    def test_spec_needs_an_input(self):
        with pytest.raises(ValueError):
            build_ffmpeg_options(SourceSpec())


class TestTranscodedAudio:
    async def test_frames_then_end(self):
        spawn = FakeSpawn(FakePopen(b"\x01" * (FRAME_SIZE * 2 + 100)))
        audio = await Transcoder("ffmpeg", spawn=spawn).open(SourceSpec(path="/cache/abc", seek_seconds=5))

        assert isinstance(audio, discord.FFmpegPCMAudio)
        assert audio.read() == b"\x01" * FRAME_SIZE
        assert audio.read() == b"\x01" * FRAME_SIZE
        # short tail is dropped
        assert audio.read() == b""
        assert await audio.wait_finished() is True
        assert audio.bytes_delivered == FRAME_SIZE * 2

        args = list(spawn.args)
        assert args[0] == "ffmpeg"
        assert args[args.index("-i") + 1] == "/cache/abc"
        assert args.index("-ss") < args.index("-i")
        assert args[-1] == "pipe:1"
        assert spawn.kwargs["stdin"] == subprocess.DEVNULL
        audio.cleanup()

    async def test_exit_before_output(self):
        process = FakePopen(b"", exit_code=1)
        with pytest.raises(SourceUnavailable) as exc:
            await Transcoder("ffmpeg", spawn=FakeSpawn(process)).open(SourceSpec(path="/cache/abc"))
        assert "código 1" in str(exc.value)

    async def test_startup_timeout_kills(self):
        process = FakePopen(hold=True)
        transcoder = Transcoder("ffmpeg", spawn=FakeSpawn(process), startup_timeout=0.05)
        with pytest.raises(SourceUnavailable):
            await transcoder.open(SourceSpec(url="https://media.example/a"))
        assert process.killed

    async def test_nonzero_exit_after_output(self):
        process = FakePopen(b"\x01" * FRAME_SIZE, exit_code=1)
        audio = await Transcoder("ffmpeg", spawn=FakeSpawn(process)).open(SourceSpec(path="/x"))
        assert audio.read() == b"\x01" * FRAME_SIZE
        assert audio.read() == b""
        assert await audio.wait_finished() is False
        assert "código 1" in audio.error
        audio.cleanup()

    async def test_missing_ffmpeg_aborts_writer(self, file_cache):
        writer = file_cache.begin_write("e" * 64)
        transcoder = Transcoder("ffmpeg", spawn=FakeSpawn(error=discord.ClientException("ffmpeg was not found.")))
        with pytest.raises(SourceUnavailable):
            await transcoder.open(SourceSpec(chunks=chunks_of(b"abc")), cache_writer=writer)
        assert await writer.committed is None

    async def test_writer_needs_chunks(self, file_cache):
        writer = file_cache.begin_write("e" * 64)
        with pytest.raises(ValueError):
            await Transcoder("ffmpeg", spawn=FakeSpawn(FakePopen())).open(SourceSpec(path="/x"), cache_writer=writer)
        await writer.abort()

    async def test_cleanup_kills_ffmpeg(self):
        process = FakePopen(b"\x01" * FRAME_SIZE * 2, hold=True)
        audio = await Transcoder("ffmpeg", spawn=FakeSpawn(process)).open(SourceSpec(path="/x"))
        audio.cleanup()
        audio.cleanup()
        assert await audio.wait_finished() is True
        assert process.killed
        assert audio.read() == b""

    async def test_piped_source_is_cached(self, file_cache):
        process = FakePopen(b"\x01" * FRAME_SIZE, hold=True)
        spawn = FakeSpawn(process)
        writer = file_cache.begin_write("e" * 64)
        audio = await Transcoder("ffmpeg", spawn=spawn).open(
            SourceSpec(chunks=chunks_of(b"abc", b"", b"def")), cache_writer=writer
        )
        assert spawn.kwargs["stdin"] == subprocess.PIPE
        assert "-" in spawn.args

        path = await writer.committed
        with open(path, "rb") as fh:
            assert fh.read() == b"abcdef"
        await asyncio.to_thread(process.wait, 5)
        assert bytes(process.stdin.data) == b"abcdef"
        assert process.stdin.closed

        assert audio.read() == b"\x01" * FRAME_SIZE
        assert audio.read() == b""
        assert await audio.wait_finished() is True
        audio.cleanup()

    async def test_cleanup_while_caching_lets_the_copy_finish(self, file_cache):
        """The listener leaving does not cut the cache copy short."""
        gate = asyncio.Event()

        async def chunks():
            yield b"abc"
            await gate.wait()
            yield b"def"

        process = FakePopen(b"\x01" * FRAME_SIZE, hold=True)
        writer = file_cache.begin_write("e" * 64)
        audio = await Transcoder("ffmpeg", spawn=FakeSpawn(process)).open(
            SourceSpec(chunks=chunks()), cache_writer=writer
        )

        audio.cleanup()
        assert await audio.wait_finished() is True
        assert process.killed

        gate.set()
        path = await writer.committed
        with open(path, "rb") as fh:
            assert fh.read() == b"abcdef"

    async def test_failing_source_marks_the_stream_failed(self, file_cache):
        async def chunks():
            yield b"abc"
            raise ConnectionResetError("peer went away")

        process = FakePopen(b"\x01" * FRAME_SIZE, hold=True)
        writer = file_cache.begin_write("e" * 64)
        audio = await Transcoder("ffmpeg", spawn=FakeSpawn(process)).open(
            SourceSpec(chunks=chunks()), cache_writer=writer
        )

        assert await writer.committed is None
        await asyncio.to_thread(process.wait, 5)
        assert audio.read() == b"\x01" * FRAME_SIZE
        assert audio.read() == b""
        assert await audio.wait_finished() is False
        assert "peer went away" in audio.error
        audio.cleanup()
