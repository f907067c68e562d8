import json
import random
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from channel_mirror import uploader as uploader_module
from channel_mirror.accounts import AccountSelector
from channel_mirror.counters import CounterStore
from channel_mirror.errors import UploadError
from channel_mirror.media import CommandResult
from channel_mirror.models import MISSING_UPLOAD_ID_MESSAGE, AccountConfig, UploadResult
from channel_mirror.store import StateStore
from channel_mirror.uploader import (
    CommandUploader,
    UploadRequest,
    UploadService,
    UploadSettings,
    Uploader,
    parse_downstream_id,
)

NOW = 1_700_000_000


class FakeUploader(Uploader):
    def __init__(self, results):
        self.results = list(results)
        self.requests = []

    def upload(self, request, account):
        self.requests.append((request, account.name))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def seed_video(store, video_id, title="Title", subtitles=("en",)):
    video_dir = store.ensure_dir("C", video_id)
    media = video_dir / f"{video_id}.mp4"
    media.write_bytes(b"media")
    store.mark_completed("C", video_id, "video", str(media))
    for language in subtitles:
        path = video_dir / f"{title}[{video_id}].{language}.srt"
        path.write_text("1\n", encoding="utf-8")
        store.mark_completed("C", video_id, "subtitles", str(path), language)
    (video_dir / "cover.jpg").write_bytes(b"\xff\xd8\xff")
    store.save_video_info("C", video_id, {"id": video_id, "title": title, "description": "desc"})
    return media


def make_service(tmp_path, results, accounts=("alice",), limit=160, **settings):
    store = StateStore(tmp_path, clock=lambda: NOW)
    counters = CounterStore(store)
    selector = AccountSelector(counters, accounts, daily_limit=limit, rng=random.Random(5))
    uploader = FakeUploader(results)
    service = UploadService(
        store,
        selector,
        uploader,
        {name: AccountConfig(name=name) for name in accounts},
        UploadSettings(**settings),
    )
    return service, store, counters, uploader


def test_successful_upload_records_id_and_counts(tmp_path):
    service, store, counters, uploader = make_service(
        tmp_path, [UploadResult(success=True, downstream_id="BV1xx")]
    )
    store.save_channel_info("C", [{"id": "v1", "title": "Title"}])
    seed_video(store, "v1", subtitles=("zh", "en"))

    summary = service.run(["C"])

    assert summary.uploaded == 1
    status = store.load_upload_status("C", "v1")
    assert status["status"] == "completed"
    assert status["downstream_id"] == "BV1xx"
    assert status["downstream_account"] == "alice"
    assert counters.upload_counts() == {"alice": 1}
    request, account = uploader.requests[0]
    assert account == "alice"
    assert request.title == "Title"
    assert request.description == "desc"
    # English goes first
    assert [p.name for p in request.subtitles] == ["Title[v1].en.srt", "Title[v1].zh.srt"]
    assert request.cover.name == "cover.jpg"


def test_success_without_downstream_id_is_a_failure(tmp_path):
    service, store, counters, _ = make_service(tmp_path, [UploadResult(success=True)])
    store.save_channel_info("C", [{"id": "v1"}])
    seed_video(store, "v1")

    summary = service.run(["C"])

    assert summary.failed == 1
    status = store.load_upload_status("C", "v1")
    assert status["status"] == "failed"
    assert status["error"] == MISSING_UPLOAD_ID_MESSAGE
    assert counters.upload_counts() == {}


def test_uploader_error_is_recorded(tmp_path):
    service, store, _, _ = make_service(tmp_path, [UploadError("network unreachable")])
    store.save_channel_info("C", [{"id": "v1"}])
    seed_video(store, "v1")

    service.run(["C"])

    assert store.load_upload_status("C", "v1")["error"] == "network unreachable"


def test_only_downloaded_and_not_uploaded_videos_are_eligible(tmp_path):
    service, store, _, _ = make_service(tmp_path, [])
    store.save_channel_info("C", [{"id": "v1"}, {"id": "v2"}, {"id": "v3"}])
    seed_video(store, "v1")
    seed_video(store, "v2")
    store.mark_upload_completed("C", "v2", "alice", "BV2")

    assert [v.video_id for v in service.eligible_videos("C")] == ["v1"]


def test_stops_when_accounts_are_exhausted(tmp_path):
    service, store, _, uploader = make_service(
        tmp_path,
        [UploadResult(success=True, downstream_id="BV1"), UploadResult(success=True, downstream_id="BV2")],
        limit=1,
    )
    store.save_channel_info("C", [{"id": "v1"}, {"id": "v2"}])
    seed_video(store, "v1")
    seed_video(store, "v2")

    summary = service.run(["C"])

    assert summary.uploaded == 1
    assert summary.accounts_exhausted is True
    assert len(uploader.requests) == 1
    assert store.load_upload_status("C", "v2") == {}


def test_original_is_deleted_after_upload_when_enabled(tmp_path):
    service, store, _, _ = make_service(
        tmp_path, [UploadResult(success=True, downstream_id="BV1")],
        delete_original_after_upload=True,
    )
    store.save_channel_info("C", [{"id": "v1"}])
    media = seed_video(store, "v1")

    service.run(["C"])

    assert not media.exists()
    assert store.is_upload_completed("C", "v1") is True


def test_failed_cleanup_still_counts_as_uploaded(tmp_path, monkeypatch, capsys):
    service, store, counters, _ = make_service(
        tmp_path, [UploadResult(success=True, downstream_id="BV1")],
        delete_original_after_upload=True,
    )
    store.save_channel_info("C", [{"id": "v1"}])
    media = seed_video(store, "v1")

    def refuse(self, *args, **kwargs):
        raise PermissionError(f"read-only: {self}")

    monkeypatch.setattr(Path, "unlink", refuse)
    summary = service.run(["C"])

    assert (summary.uploaded, summary.failed) == (1, 0)
    assert media.exists()
    assert store.load_upload_status("C", "v1")["status"] == "completed"
    assert counters.upload_counts() == {"alice": 1}
    assert "Could not remove local media" in capsys.readouterr().err


def test_cancel_stops_before_next_upload(tmp_path):
    service, store, _, uploader = make_service(tmp_path, [])
    store.save_channel_info("C", [{"id": "v1"}])
    seed_video(store, "v1")
    service.cancel_event.set()

    summary = service.run(["C"])

    assert summary.cancelled is True
    assert uploader.requests == []


@pytest.mark.parametrize(
    "stdout, expected",
    [
        ('uploading...\n{"bvid": "BV1ab411c7"}\n', "BV1ab411c7"),
        ('{"id": 12345}', "12345"),
        ("progress 100%\nBV1xy\n", "BV1xy"),
        ("all done, thanks\n", None),
        ("", None),
    ],
)
def test_parse_downstream_id(stdout, expected):
    assert parse_downstream_id(stdout) == expected


def test_command_uploader_substitutes_placeholders(monkeypatch, tmp_path):
    seen = {}

    def fake_run(command, cancel_event, timeout):
        seen["command"] = command
        seen["description"] = Path(command[command.index("--desc") + 1]).read_text(encoding="utf-8")
        return CommandResult(0, '{"id": "BV9"}\n', "")

    monkeypatch.setattr(uploader_module, "run_command", fake_run)
    request = UploadRequest(
        video_id="v1",
        video_path=tmp_path / "v1.mp4",
        title="My Title",
        description="line one\nline two",
        subtitles=[tmp_path / "a.en.srt", tmp_path / "a.zh.srt"],
        cover=tmp_path / "cover.jpg",
    )
    uploader = CommandUploader(cancel_event=threading.Event())
    account = AccountConfig(
        name="alice",
        command="up --user {account} --title {title} --desc {description_file} "
                "--subs {subtitles} --cover {cover} {file}",
    )

    result = uploader.upload(request, account)

    assert result.success is True
    assert result.downstream_id == "BV9"
    command = seen["command"]
    assert command[:3] == ["up", "--user", "alice"]
    assert command[command.index("--title") + 1] == "My Title"
    assert command[command.index("--subs") + 1] == f"{tmp_path / 'a.en.srt'},{tmp_path / 'a.zh.srt'}"
    assert command[-1] == str(tmp_path / "v1.mp4")
    assert seen["description"] == "line one\nline two"
    # The temporary description file is removed afterwards
    assert not Path(command[command.index("--desc") + 1]).exists()


def test_command_uploader_reports_non_zero_exit(monkeypatch, tmp_path):
    monkeypatch.setattr(
        uploader_module, "run_command",
        lambda command, cancel_event, timeout: CommandResult(2, "", "login expired\n"),
    )
    uploader = CommandUploader(default_command="up {file}")
    request = UploadRequest(video_id="v1", video_path=tmp_path / "v1.mp4", title="t")

    result = uploader.upload(request, AccountConfig(name="alice"))

    assert result.success is False
    assert "login expired" in result.error


def test_command_uploader_without_command_raises(tmp_path):
    request = UploadRequest(video_id="v1", video_path=tmp_path / "v1.mp4", title="t")
    with pytest.raises(UploadError):
        CommandUploader().upload(request, AccountConfig(name="alice"))


def test_upload_status_file_is_json(tmp_path):
    service, store, _, _ = make_service(tmp_path, [UploadResult(success=True, downstream_id="BV1")])
    store.save_channel_info("C", [{"id": "v1"}])
    seed_video(store, "v1")
    service.run(["C"])

    payload = json.loads(store.upload_status_path("C", "v1").read_text())
    assert payload["completed_at"] == NOW
    assert payload["updated_at"] == NOW
