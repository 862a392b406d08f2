"""批处理控制器：状态流转、失败隔离与协作式取消的测试。"""

from __future__ import annotations

import asyncio
import csv
import io
from pathlib import Path
from typing import Callable, Optional

import pytest
from PIL import Image

from mask_clipper.core.config import OutputConfig, PipelineConfig
from mask_clipper.core.exceptions import EncodeError, FileWriteError, InvalidState, PredictionError, PreconditionFailed
from mask_clipper.core.models import FileItem, FileStatus, Phase, RunStatus
from mask_clipper.core.output_manager import OutputWriter
from mask_clipper.core.progress import ItemStatusChanged, PipelineEvent, RunFinished, RunStarted
from mask_clipper.core.report import write_csv_report
from mask_clipper.processing.compositor import apply_mask
from mask_clipper.processing.mask_provider import DirectoryMaskProvider
from mask_clipper.processing.pipeline import PipelineController


def _png_bytes(color: str = "blue", size: tuple[int, int] = (16, 16)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_items(count: int) -> list[FileItem]:
    return [FileItem(name=f"photo{idx}.jpg", source=_png_bytes(), size=0) for idx in range(count)]


class FakeMaskProvider:
    """返回固定灰度蒙版；可指定失败的调用序号与调用时的回调。"""

    def __init__(
        self,
        *,
        value: int = 255,
        fail_on: Optional[set[int]] = None,
        on_call: Optional[Callable[[int], None]] = None,
        delay: float = 0.0,
    ) -> None:
        self.value = value
        self.fail_on = fail_on or set()
        self.on_call = on_call
        self.delay = delay
        self.calls = 0

    async def generate(self, source) -> Image.Image:
        index = self.calls
        self.calls += 1
        if self.on_call:
            self.on_call(index)
        if self.delay:
            await asyncio.sleep(self.delay)
        if index in self.fail_on:
            raise PredictionError(f"模型推理失败 #{index}")
        return Image.new("L", (16, 16), self.value)


class RecordingWriter(OutputWriter):
    def __init__(self, *, fail_on: Optional[set[int]] = None, on_call: Optional[Callable[[int], None]] = None) -> None:
        super().__init__("overwrite")
        self.fail_on = fail_on or set()
        self.on_call = on_call
        self.calls = 0

    async def write(self, directory: Path, file_name: str, data: bytes) -> Path:
        index = self.calls
        self.calls += 1
        if index in self.fail_on:
            raise FileWriteError(f"磁盘已满: {file_name}")
        path = await super().write(directory, file_name, data)
        if self.on_call:
            self.on_call(index)
        return path


class EventLog:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def item_history(self, item: FileItem) -> list[FileStatus]:
        return [e.status for e in self.events if isinstance(e, ItemStatusChanged) and e.item.id == item.id]


def make_controller(
    output_dir: Optional[Path],
    provider: Optional[FakeMaskProvider] = None,
    writer: Optional[OutputWriter] = None,
    **kwargs,
) -> PipelineController:
    config = PipelineConfig(
        output=OutputConfig(output_dir=output_dir) if output_dir else None,
        step_timeout=kwargs.pop("step_timeout", None),
    )
    return PipelineController(provider or FakeMaskProvider(), writer, config, **kwargs)


def test_all_items_complete_and_progress_reaches_100(tmp_path: Path) -> None:
    controller = make_controller(tmp_path)
    log = EventLog()
    controller.subscribe(log)
    items = make_items(3)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.SUCCESS
    assert controller.phase is Phase.COMPLETED
    assert run.progress == 100
    assert run.count(FileStatus.COMPLETED) == 3
    for idx, item in enumerate(items):
        assert log.item_history(item) == [FileStatus.PROCESSING, FileStatus.COMPLETED]
        assert (tmp_path / f"photo{idx}-clipped.png").exists()
        assert run.outcomes[item.id].output_path == tmp_path / f"photo{idx}-clipped.png"

    assert isinstance(log.events[0], RunStarted)
    assert isinstance(log.events[-1], RunFinished)
    assert log.events[-1].status is RunStatus.SUCCESS

    with Image.open(tmp_path / "photo0-clipped.png") as output:
        assert output.mode == "RGBA"
        assert output.size == (16, 16)
        assert output.getpixel((0, 0)) == (0, 0, 255, 255)


def test_events_follow_list_order_and_index_is_monotonic(tmp_path: Path) -> None:
    controller = make_controller(tmp_path)
    log = EventLog()
    controller.subscribe(log)
    items = make_items(4)

    asyncio.run(controller.start_run(items))

    changes = [e for e in log.events if isinstance(e, ItemStatusChanged)]
    assert [e.index for e in changes] == [0, 0, 1, 1, 2, 2, 3, 3]
    indices = [e.run.current_index for e in changes]
    assert indices == sorted(indices)
    assert [e.progress for e in changes if e.status is FileStatus.COMPLETED] == [25, 50, 75, 100]


def test_single_compositing_failure_does_not_abort_batch(tmp_path: Path) -> None:
    calls = {"count": 0}

    def flaky_compositor(source, mask) -> bytes:
        index = calls["count"]
        calls["count"] += 1
        if index == 2:
            raise EncodeError("PNG 编码失败")
        return apply_mask(source, mask)

    controller = make_controller(tmp_path, compositor=flaky_compositor)
    log = EventLog()
    controller.subscribe(log)
    items = make_items(5)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.SUCCESS
    assert run.progress == 100
    assert run.count(FileStatus.ERROR) == 1
    assert run.count(FileStatus.COMPLETED) == 4
    failed = run.outcomes[items[2].id]
    assert failed.status is FileStatus.ERROR
    assert failed.message is not None and failed.message.startswith("EncodeError")
    assert log.item_history(items[2]) == [FileStatus.PROCESSING, FileStatus.ERROR]
    assert not (tmp_path / "photo2-clipped.png").exists()


def test_undecodable_source_is_marked_error(tmp_path: Path) -> None:
    items = [
        FileItem(name="broken.png", source=b"not an image"),
        FileItem(name="good.png", source=_png_bytes()),
    ]
    controller = make_controller(tmp_path)

    run = asyncio.run(controller.start_run(items))

    assert run.item_status[items[0].id] is FileStatus.ERROR
    assert "DecodeError" in (run.outcomes[items[0].id].message or "")
    assert run.item_status[items[1].id] is FileStatus.COMPLETED


def test_prediction_and_write_failures_are_isolated(tmp_path: Path) -> None:
    provider = FakeMaskProvider(fail_on={0})
    writer = RecordingWriter(fail_on={0})
    controller = make_controller(tmp_path, provider, writer)
    items = make_items(3)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.SUCCESS
    assert [run.item_status[item.id] for item in items] == [
        FileStatus.ERROR,
        FileStatus.ERROR,
        FileStatus.COMPLETED,
    ]
    assert "PredictionError" in (run.outcomes[items[0].id].message or "")
    assert "FileWriteError" in (run.outcomes[items[1].id].message or "")


def test_cancel_before_first_item(tmp_path: Path) -> None:
    provider = FakeMaskProvider()
    controller = make_controller(tmp_path, provider)
    log = EventLog()
    controller.subscribe(log)

    def cancel_on_start(event: PipelineEvent) -> None:
        if isinstance(event, RunStarted):
            controller.request_cancel()

    controller.subscribe(cancel_on_start)
    items = make_items(3)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.CANCELLED
    assert controller.phase is Phase.CANCELLED
    assert run.cancel_requested
    assert run.count(FileStatus.COMPLETED) == 0
    assert run.count(FileStatus.ERROR) == 0
    assert set(run.item_status.values()) == {FileStatus.PENDING}
    assert provider.calls == 0
    assert list(tmp_path.iterdir()) == []
    assert isinstance(log.events[-1], RunFinished)
    assert log.events[-1].status is RunStatus.CANCELLED


def test_cancel_during_mask_request_lets_request_finish(tmp_path: Path) -> None:
    controller: PipelineController

    def cancel_on_second(index: int) -> None:
        if index == 1:
            controller.request_cancel()

    provider = FakeMaskProvider(on_call=cancel_on_second)
    controller = make_controller(tmp_path, provider)
    items = make_items(3)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.CANCELLED
    assert provider.calls == 2
    assert run.item_status[items[0].id] is FileStatus.COMPLETED
    # 进行中的文件保持最后到达的状态，不强制标记为 error
    assert run.item_status[items[1].id] is FileStatus.PROCESSING
    assert run.item_status[items[2].id] is FileStatus.PENDING
    assert run.current_index == 1
    assert run.progress == 33
    assert not (tmp_path / "photo1-clipped.png").exists()


def test_cancel_after_write_checkpoint(tmp_path: Path) -> None:
    controller: PipelineController

    def cancel_after_first_write(index: int) -> None:
        if index == 0:
            controller.request_cancel()

    writer = RecordingWriter(on_call=cancel_after_first_write)
    controller = make_controller(tmp_path, writer=writer)
    items = make_items(2)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.CANCELLED
    assert (tmp_path / "photo0-clipped.png").exists()
    assert run.item_status[items[0].id] is FileStatus.PROCESSING
    assert run.item_status[items[1].id] is FileStatus.PENDING
    assert writer.calls == 1


def test_request_cancel_is_idempotent(tmp_path: Path) -> None:
    controller: PipelineController

    def cancel_twice(index: int) -> None:
        controller.request_cancel()
        controller.request_cancel()
        assert controller.run is not None and controller.run.cancel_requested
        assert controller.phase is Phase.RUNNING

    controller = make_controller(tmp_path, FakeMaskProvider(on_call=cancel_twice))

    items = make_items(2)
    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.CANCELLED
    assert run.item_status[items[0].id] is FileStatus.PROCESSING


def test_start_run_preconditions() -> None:
    controller = make_controller(None)

    with pytest.raises(PreconditionFailed):
        asyncio.run(controller.start_run(make_items(1)))
    assert controller.phase is Phase.IDLE
    assert controller.files == ()


def test_start_run_with_empty_list(tmp_path: Path) -> None:
    controller = make_controller(tmp_path)

    with pytest.raises(PreconditionFailed):
        asyncio.run(controller.start_run())
    with pytest.raises(PreconditionFailed):
        asyncio.run(controller.start_run([]))


def test_operations_rejected_while_running(tmp_path: Path) -> None:
    errors: list[Exception] = []
    controller: PipelineController

    async def attempt_restart() -> None:
        try:
            await controller.start_run(make_items(1))
        except InvalidState as exc:
            errors.append(exc)

    def misuse(index: int) -> None:
        for operation in (
            lambda: controller.add_files(make_items(1)),
            lambda: controller.remove_file(0),
            controller.clear_files,
            controller.acknowledge_terminal,
            lambda: controller.set_output_dir(None),
        ):
            with pytest.raises(InvalidState):
                operation()
        asyncio.get_running_loop().create_task(attempt_restart())

    controller = make_controller(tmp_path, FakeMaskProvider(on_call=misuse, delay=0.01))

    run = asyncio.run(controller.start_run(make_items(1)))

    assert run.status is RunStatus.SUCCESS
    assert run.count(FileStatus.COMPLETED) == 1
    assert len(errors) == 1


def test_acknowledge_and_reset(tmp_path: Path) -> None:
    controller = make_controller(tmp_path)

    with pytest.raises(InvalidState):
        controller.request_cancel()
    with pytest.raises(InvalidState):
        controller.acknowledge_terminal()

    asyncio.run(controller.start_run(make_items(2)))
    assert controller.phase is Phase.COMPLETED
    with pytest.raises(InvalidState):
        controller.request_cancel()

    controller.acknowledge_terminal()
    assert controller.phase is Phase.IDLE
    assert controller.run is None
    assert len(controller.files) == 2

    run = asyncio.run(controller.start_run())
    assert run.status is RunStatus.SUCCESS

    controller.reset()
    assert controller.phase is Phase.IDLE
    assert controller.files == ()


def test_file_list_management(tmp_path: Path) -> None:
    controller = make_controller(None)
    items = make_items(3)

    controller.add_files(items)
    controller.remove_file(1)
    controller.set_output_dir(tmp_path)

    assert [item.name for item in controller.files] == ["photo0.jpg", "photo2.jpg"]
    run = asyncio.run(controller.start_run())
    assert set(run.outcomes) == {items[0].id, items[2].id}


def test_step_timeout_marks_item_error(tmp_path: Path) -> None:
    provider = FakeMaskProvider(delay=1.0)
    controller = make_controller(tmp_path, provider, step_timeout=0.01)
    items = make_items(1)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.SUCCESS
    assert run.item_status[items[0].id] is FileStatus.ERROR
    assert "TimeoutError" in (run.outcomes[items[0].id].message or "")


def test_failing_observer_does_not_break_run(tmp_path: Path) -> None:
    controller = make_controller(tmp_path)

    def broken(event: PipelineEvent) -> None:
        raise RuntimeError("observer bug")

    controller.subscribe(broken)
    log = EventLog()
    unsubscribe = controller.subscribe(log)

    run = asyncio.run(controller.start_run(make_items(2)))
    assert run.status is RunStatus.SUCCESS
    recorded = len(log.events)

    unsubscribe()
    controller.acknowledge_terminal()
    asyncio.run(controller.start_run())
    assert len(log.events) == recorded


def test_directory_mask_provider_end_to_end(tmp_path: Path) -> None:
    source_dir = tmp_path / "input"
    mask_dir = tmp_path / "masks"
    output_dir = tmp_path / "output"
    for directory in (source_dir, mask_dir, output_dir):
        directory.mkdir()

    Image.new("RGB", (20, 10), "green").save(source_dir / "Cat.JPG")
    mask = Image.new("L", (10, 5), 0)
    mask.paste(255, (0, 0, 5, 5))
    mask.save(mask_dir / "Cat-mask.png")
    Image.new("RGB", (8, 8), "red").save(source_dir / "dog.png")

    items = [FileItem.from_path(source_dir / "Cat.JPG"), FileItem.from_path(source_dir / "dog.png")]
    controller = make_controller(output_dir, DirectoryMaskProvider(mask_dir))

    run = asyncio.run(controller.start_run(items))

    assert run.item_status[items[0].id] is FileStatus.COMPLETED
    assert run.item_status[items[1].id] is FileStatus.ERROR
    assert "未找到对应的蒙版" in (run.outcomes[items[1].id].message or "")

    with Image.open(output_dir / "Cat-clipped.png") as output:
        assert output.size == (20, 10)
        assert output.getpixel((0, 0))[3] == 255
        assert output.getpixel((19, 9))[3] == 0

    report = write_csv_report(controller.files, run, output_dir, "report.csv")
    with report.open("r", encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["status"] for row in rows] == ["completed", "error"]


def test_cancel_after_compositing_checkpoint(tmp_path: Path) -> None:
    controller: PipelineController

    def cancelling_compositor(source, mask) -> bytes:
        encoded = apply_mask(source, mask)
        controller.request_cancel()
        return encoded

    writer = RecordingWriter()
    controller = make_controller(tmp_path, writer=writer, compositor=cancelling_compositor)
    items = make_items(2)

    run = asyncio.run(controller.start_run(items))

    assert run.status is RunStatus.CANCELLED
    assert writer.calls == 0
    assert list(tmp_path.iterdir()) == []
    assert run.item_status[items[0].id] is FileStatus.PROCESSING
    assert run.item_status[items[1].id] is FileStatus.PENDING


def test_new_run_requires_acknowledging_previous_one(tmp_path: Path) -> None:
    controller = make_controller(tmp_path)
    first = asyncio.run(controller.start_run(make_items(1)))

    with pytest.raises(InvalidState):
        asyncio.run(controller.start_run(make_items(2)))
    with pytest.raises(InvalidState):
        asyncio.run(controller.start_run())

    assert controller.phase is Phase.COMPLETED
    assert controller.run == first
    assert len(controller.files) == 1


def test_directory_mask_provider_matches_names_with_glob_characters(tmp_path: Path) -> None:
    mask_dir = tmp_path / "masks"
    mask_dir.mkdir()
    Image.new("L", (4, 4), 255).save(mask_dir / "img[1]-mask.png")
    Image.new("L", (4, 4), 255).save(mask_dir / "img1-mask.png")
    (mask_dir / "img[1]-mask.txt").write_text("not a mask")

    provider = DirectoryMaskProvider(mask_dir)

    assert provider.find_mask(tmp_path / "img[1].png") == mask_dir / "img[1]-mask.png"
    assert provider.find_mask(tmp_path / "img?.png") is None
    assert DirectoryMaskProvider(tmp_path / "missing").find_mask(tmp_path / "a.png") is None
