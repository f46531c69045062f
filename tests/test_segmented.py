from adworker import providers
from adworker.errors import ProviderNetworkError
from adworker.pipeline import monitor
from adworker.pipeline import project_service
from adworker.pipeline import segmented
from adworker.pipeline import store
from adworker.pipeline.models import (
    AdType,
    SegmentedStep,
    StartProjectRequest,
    TaskKind,
)

from conftest import minutes_ago

PROMPTS = {
    "description": "A bottle of sparkling water on a sunny beach",
    "segments": [
        {"description": "Bottle on the sand", "first_frame_description": "Bottle close-up on sand"},
        {"description": "Hand picks up the bottle", "first_frame_description": "Hand reaching for bottle"},
        {"description": "Person drinks and smiles", "first_frame_description": "Person smiling",
         "closing_frame_description": "Logo over the sea"},
    ],
}


def _start_segmented(**overrides):
    fields = {
        "user_id": "user-1",
        "image_url": "https://cdn.example.com/product.png",
        "video_model": "veo3_fast",
        "video_duration": "24s",
        "video_prompts": PROMPTS,
    }
    fields.update(overrides)
    return project_service.start_project(StartProjectRequest(**fields))


def _frames_ready(provider):
    """Keyframe tasks image-1..3 are first frames; image-4 is the closing frame."""
    for n in range(1, 4):
        provider.succeed(f"image-{n}", f"https://img.example.com/first-{n - 1}.png")
    provider.succeed("image-4", "https://img.example.com/closing.png")


def _clips_ready(provider, count=3):
    for n in range(1, count + 1):
        provider.succeed(f"video-{n}", f"https://vid.example.com/clip-{n - 1}.mp4")


def test_start_creates_segments_and_keyframe_tasks(db, provider):
    project = _start_segmented()

    assert project.is_segmented
    assert project.segment_count == 3
    assert project.current_step == "generating_segment_frames"
    assert db.calls[("ad_segments", "insert")] == 1

    rows = db.segments(project.id)
    assert [r["segment_index"] for r in rows] == [0, 1, 2]
    assert [r["first_frame_task_id"] for r in rows] == ["image-1", "image-2", "image-3"]
    assert rows[2]["closing_frame_task_id"] == "image-4"
    assert rows[0]["closing_frame_task_id"] is None
    assert all(r["status"] == "generating_first_frame" for r in rows)


def test_segmented_happy_path(db, provider):
    project = _start_segmented()

    _frames_ready(provider)
    monitor.run_sweep()
    row = db.project(project.id)
    assert row["current_step"] == "generating_segment_videos"
    assert row["cover_image_url"] == "https://img.example.com/first-0.png"
    assert row["progress_percentage"] == 70
    assert len(provider.submitted(TaskKind.VIDEO)) == 3

    _clips_ready(provider)
    monitor.run_sweep()
    row = db.project(project.id)
    assert row["current_step"] == "merging_segments"
    assert row["fal_merge_task_id"] == "merge-1"
    assert row["progress_percentage"] == 95

    merge_request, _ = provider.submitted(TaskKind.MERGE)[0]
    assert merge_request.video_urls == [
        "https://vid.example.com/clip-0.mp4",
        "https://vid.example.com/clip-1.mp4",
        "https://vid.example.com/clip-2.mp4",
    ]

    provider.succeed("merge-1", "https://vid.example.com/final.mp4")
    result = monitor.run_sweep()
    row = db.project(project.id)
    assert result.completed == 1
    assert row["status"] == "completed"
    assert row["merged_video_url"] == "https://vid.example.com/final.mp4"
    assert row["video_url"] == "https://vid.example.com/final.mp4"
    assert row["segment_status"]["videosReady"] == 3
    assert row["segment_status"]["mergedVideoUrl"] == "https://vid.example.com/final.mp4"


def test_closing_frame_is_next_segments_first_frame(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()

    rows = db.segments(project.id)
    assert rows[0]["closing_frame_url"] == rows[1]["first_frame_url"]
    assert rows[1]["closing_frame_url"] == rows[2]["first_frame_url"]
    assert rows[2]["closing_frame_url"] == "https://img.example.com/closing.png"

    requests = [payload for payload, _ in provider.submitted(TaskKind.VIDEO)]
    assert requests[0].first_and_last_frames
    assert requests[0].image_urls == [
        "https://img.example.com/first-0.png",
        "https://img.example.com/first-1.png",
    ]
    assert requests[2].image_urls == [
        "https://img.example.com/first-2.png",
        "https://img.example.com/closing.png",
    ]


def test_closing_frame_is_backfilled_when_next_frame_arrives_first(db, provider):
    project = _start_segmented()
    provider.succeed("image-2", "https://img.example.com/first-1.png")
    monitor.run_sweep()

    rows = db.segments(project.id)
    assert rows[0]["first_frame_url"] is None
    assert rows[0]["closing_frame_url"] == "https://img.example.com/first-1.png"
    assert rows[1]["closing_frame_url"] is None
    assert provider.submitted(TaskKind.VIDEO) == []

    provider.succeed("image-1", "https://img.example.com/first-0.png")
    monitor.run_sweep()
    request, _ = provider.submitted(TaskKind.VIDEO)[0]
    assert request.image_urls == [
        "https://img.example.com/first-0.png",
        "https://img.example.com/first-1.png",
    ]


def test_clip_waits_for_its_closing_frame(db, provider):
    project = _start_segmented()
    # Segment 1's closing frame (segment 2's first frame) is still generating
    provider.succeed("image-1", "https://img.example.com/first-0.png")
    provider.succeed("image-2", "https://img.example.com/first-1.png")
    monitor.run_sweep()

    rows = db.segments(project.id)
    assert rows[0]["video_task_id"] == "video-1"
    assert rows[1]["video_task_id"] is None
    assert db.project(project.id)["current_step"] == "generating_segment_videos"


def test_merge_waits_for_every_clip(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()

    _clips_ready(provider, count=2)
    monitor.run_sweep()
    row = db.project(project.id)
    assert row["fal_merge_task_id"] is None
    assert row["current_step"] == "generating_segment_videos"
    assert row["progress_percentage"] == 87
    assert provider.submitted(TaskKind.MERGE) == []


def test_unsubmitted_keyframes_are_recovered(db, provider):
    provider.submit_errors.append(RuntimeError("Kie.ai unavailable"))
    project = _start_segmented()

    rows = db.segments(project.id)
    assert len(rows) == 3
    assert all(r["first_frame_task_id"] is None for r in rows)
    assert all(r["status"] == "pending_first_frame" for r in rows)

    monitor.run_sweep()
    rows = db.segments(project.id)
    assert [r["first_frame_task_id"] for r in rows] == ["image-1", "image-2", "image-3"]
    assert rows[2]["closing_frame_task_id"] == "image-4"
    assert db.project(project.id)["status"] == "processing"


def test_exhausted_segment_fails_the_project(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()

    provider.succeed("video-1", "https://vid.example.com/clip-0.mp4")
    provider.fail("video-2", "Generation failed")
    result = monitor.run_sweep()

    row = db.project(project.id)
    assert result.failed == 1
    assert row["status"] == "failed"
    assert row["error_message"] == "Segment 2 video generation failed: Generation failed"
    assert row["segment_status"]["segments"][1]["status"] == "failed"
    assert db.segments(project.id)[1]["status"] == "failed"


def test_retryable_segment_failure_is_resubmitted(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()

    provider.fail("video-2", "Internal error", retryable=True)
    monitor.run_sweep()

    segment = db.segments(project.id)[1]
    assert segment["video_task_id"] == "video-4"
    assert segment["retry_count"] == 1
    assert segment["error_message"] == "Retrying after server error (attempt 1/3)"
    assert db.project(project.id)["status"] == "processing"


def test_merge_timeout(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()
    _clips_ready(provider)
    monitor.run_sweep()

    db.project(project.id)["last_processed_at"] = minutes_ago(16).isoformat()
    monitor.run_sweep()
    row = db.project(project.id)
    assert row["status"] == "failed"
    assert row["error_message"] == "Video merging timeout after 15 minutes. Please retry."
    assert "merge-1" not in provider.status_calls


def test_merge_failure(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()
    _clips_ready(provider)
    monitor.run_sweep()

    provider.fail("merge-1", "ffmpeg exited 1")
    monitor.run_sweep()
    row = db.project(project.id)
    assert row["status"] == "failed"
    assert row["error_message"] == "Video merge failed: ffmpeg exited 1"


def test_character_ad_shares_one_anchor(db, provider):
    project = _start_segmented(
        ad_type=AdType.CHARACTER,
        image_url=None,
        reference_image_urls=["https://cdn.example.com/presenter.png"],
        video_duration="16",
    )
    assert project.current_step == "generating_cover"
    assert project.cover_task_id == "image-1"
    assert len(db.segments(project.id)) == 2

    provider.succeed("image-1", "https://img.example.com/anchor.png")
    monitor.run_sweep()

    rows = db.segments(project.id)
    assert all(r["first_frame_url"] == "https://img.example.com/anchor.png" for r in rows)
    requests = [payload for payload, _ in provider.submitted(TaskKind.VIDEO)]
    assert len(requests) == 2
    assert all(r.image_urls == ["https://img.example.com/anchor.png"] for r in requests)
    assert not any(r.first_and_last_frames for r in requests)
    assert len(provider.submitted(TaskKind.IMAGE)) == 1

    _clips_ready(provider, count=2)
    monitor.run_sweep()
    assert db.project(project.id)["current_step"] == "merging_segments"


def test_step_handlers_cover_every_step():
    assert set(segmented.STEP_HANDLERS) == set(SegmentedStep)


# ── Concurrent sweeps ────────────────────────────────────────────────────────

def test_interleaved_sweeps_submit_each_clip_once(db, provider, monkeypatch):
    project = _start_segmented()
    _frames_ready(provider)
    submit = provider.submit_task
    interleaved = []

    def submit_while_another_sweep_runs(kind, payload):
        if kind is TaskKind.VIDEO and not interleaved:
            interleaved.append(kind)
            monitor.process_project(store.get_project(project.id))
        return submit(kind, payload)

    monkeypatch.setattr(providers, "submit_task", submit_while_another_sweep_runs)
    monitor.run_sweep()

    assert len(provider.submitted(TaskKind.VIDEO)) == 3
    rows = db.segments(project.id)
    assert sorted(r["video_task_id"] for r in rows) == ["video-1", "video-2", "video-3"]
    assert all(r["status"] == "generating_video" for r in rows)


def test_two_sweeps_with_the_same_copy_merge_once(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()
    _clips_ready(provider)

    first = store.get_project(project.id)
    second = store.get_project(project.id)
    monitor.process_project(first)
    monitor.process_project(second)

    assert len(provider.submitted(TaskKind.MERGE)) == 1
    assert db.project(project.id)["fal_merge_task_id"] == "merge-1"


def test_failed_merge_submission_releases_the_claim(db, provider):
    project = _start_segmented()
    _frames_ready(provider)
    monitor.run_sweep()
    _clips_ready(provider)
    provider.submit_errors.append(ProviderNetworkError("fal.ai unreachable"))

    monitor.run_sweep()
    row = db.project(project.id)
    assert row["status"] == "processing"
    assert row["current_step"] == "generating_segment_videos"
    assert row["fal_merge_task_id"] is None

    monitor.run_sweep()
    assert db.project(project.id)["fal_merge_task_id"] == "merge-1"


def test_exhausted_segment_refunds_premium_credits(db, provider):
    project = _start_segmented(video_model="veo3")
    assert project.credits_cost == 450
    assert db.balance("user-1") == 50
    _frames_ready(provider)
    monitor.run_sweep()

    provider.fail("video-3", "Generation failed")
    monitor.run_sweep()
    assert db.project(project.id)["status"] == "failed"
    assert db.balance("user-1") == 500
    refunds = db.transactions("user-1", "refund")
    assert len(refunds) == 1
    assert refunds[0]["amount"] == 450
