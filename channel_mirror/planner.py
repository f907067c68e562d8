"""Resource planning: decide which resources every parsed video must end up with."""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from .logger import log_info, log_warning
from .models import (
    PREFERRED_THUMBNAIL_RESOLUTIONS,
    ResourceRecord,
    ResourceStatus,
    ResourceType,
    Thumbnail,
    VideoRecord,
)
from .store import StateStore

# Subtitle formats in order of preference when a track offers several
SUBTITLE_EXT_PREFERENCE = ("srt", "vtt", "srv3", "ttml", "json3")


def _base_language(language: str) -> str:
    return language.split("-", 1)[0].lower()


def language_matches(requested: str, available: str) -> bool:
    """True when two language tags share a base, so ``zh-Hans`` matches ``zh``."""
    if requested.lower() == available.lower():
        return True
    return _base_language(requested) == _base_language(available)


def find_track_key(tracks: Any, language: str) -> Optional[str]:
    """Return the upstream key of the track serving *language*, exact tag first."""
    if not isinstance(tracks, dict):
        return None
    exact = tracks.get(language)
    if isinstance(exact, list) and exact:
        return language
    for key, entries in tracks.items():
        if isinstance(entries, list) and entries and language_matches(language, str(key)):
            return str(key)
    return None


def _find_track(tracks: Any, language: str) -> Optional[List[Dict[str, Any]]]:
    key = find_track_key(tracks, language)
    return tracks[key] if key is not None else None


def _track_url(entries: List[Dict[str, Any]]) -> Optional[str]:
    usable = [e for e in entries if isinstance(e, dict) and e.get("url")]
    if not usable:
        return None
    for ext in SUBTITLE_EXT_PREFERENCE:
        for entry in usable:
            if entry.get("ext") == ext:
                return entry["url"]
    return usable[0]["url"]


def extract_subtitle_urls(raw: Dict[str, Any], languages: Iterable[str]) -> Dict[str, str]:
    """Map each requested language to a subtitle URL, manual tracks first."""
    urls: Dict[str, str] = {}
    for language in languages:
        for source in ("subtitles", "automatic_captions"):
            entries = _find_track(raw.get(source), language)
            url = _track_url(entries) if entries else None
            if url:
                urls[language] = url
                break
    return urls


def extract_thumbnails(raw: Dict[str, Any]) -> List[Thumbnail]:
    thumbnails: List[Thumbnail] = []
    for entry in raw.get("thumbnails") or []:
        if not isinstance(entry, dict) or not entry.get("url"):
            continue
        try:
            width = int(entry.get("width") or 0)
            height = int(entry.get("height") or 0)
        except (TypeError, ValueError):
            width = height = 0
        thumbnails.append(
            Thumbnail(url=entry["url"], width=width, height=height,
                      thumbnail_id=str(entry["id"]) if entry.get("id") is not None else None)
        )
    if not thumbnails and isinstance(raw.get("thumbnail"), str):
        thumbnails.append(Thumbnail(url=raw["thumbnail"]))
    return thumbnails


def select_thumbnail(thumbnails: List[Thumbnail]) -> Optional[Thumbnail]:
    """Pick the best thumbnail: a preferred resolution if listed, else the largest.

    Without any dimensions the last entry wins, as upstream lists them
    from worst to best.
    """
    if not thumbnails:
        return None
    by_size: Dict[Tuple[int, int], Thumbnail] = {}
    for thumb in thumbnails:
        by_size.setdefault((thumb.width, thumb.height), thumb)
    for resolution in PREFERRED_THUMBNAIL_RESOLUTIONS:
        if resolution in by_size:
            return by_size[resolution]
    sized = [thumb for thumb in thumbnails if thumb.area > 0]
    if sized:
        return max(sized, key=lambda thumb: thumb.area)
    return thumbnails[-1]


def build_video_info(video: VideoRecord, languages: Iterable[str]) -> Dict[str, Any]:
    """Raw upstream metadata plus the resolved subtitle map and thumbnail list."""
    info = dict(video.raw)
    info["subtitle_urls"] = extract_subtitle_urls(video.raw, languages)
    info["thumbnails"] = [thumb.to_payload() for thumb in extract_thumbnails(video.raw)]
    return info


def initialize_download_status(
    store: StateStore, channel_id: str, video: VideoRecord, languages: List[str]
) -> Dict[str, Any]:
    """Create pending entries for every resource a video needs.

    Slots that already hold anything other than ``pending`` are left
    alone, so re-parsing never undoes finished or failed work.
    """
    subtitle_urls = extract_subtitle_urls(video.raw, languages)
    thumbnail = select_thumbnail(extract_thumbnails(video.raw))

    def touch(existing: Any, resource_type: str, url: Optional[str]) -> Optional[Dict[str, Any]]:
        if existing is not None:
            record = ResourceRecord.from_payload(existing, resource_type)
            if record.status != ResourceStatus.PENDING:
                return None
        else:
            record = ResourceRecord(resource_type=resource_type)
        if url:
            record.url = url
        return record.to_payload()

    def mutate(status: Dict[str, Any]) -> None:
        payload = touch(status.get("video"), ResourceType.VIDEO.value, video.url)
        if payload is not None:
            status["video"] = payload

        if thumbnail is not None:
            payload = touch(status.get("thumbnail"), ResourceType.THUMBNAIL.value, thumbnail.url)
            if payload is not None:
                status["thumbnail"] = payload

        subtitles = status.get("subtitles")
        if not isinstance(subtitles, dict):
            subtitles = {}
        for language in languages:
            payload = touch(subtitles.get(language), ResourceType.SUBTITLE.value,
                            subtitle_urls.get(language))
            if payload is not None:
                subtitles[language] = payload
        status["subtitles"] = subtitles

    store.ensure_dir(channel_id, video.video_id)
    return store.update(store.download_status_path(channel_id, video.video_id), mutate)


def generate_pending_downloads(
    store: StateStore, channel_id: str, channel_url: str, videos: List[VideoRecord]
) -> List[Dict[str, Any]]:
    """Rebuild the channel's pending manifest from the per-video status files."""
    entries = [
        store.build_pending_entry(channel_id, video.video_id, video.title, video.url)
        for video in videos
    ]
    store.save_pending_downloads(channel_id, channel_url, entries)
    return entries


def select_window(videos: List[Dict[str, Any]], offset: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    if offset > 0:
        videos = videos[offset:]
    if limit > 0:
        videos = videos[:limit]
    return videos


def plan_channel(
    store: StateStore,
    channel_id: str,
    channel_url: str,
    raw_videos: List[Dict[str, Any]],
    languages: List[str],
    generate_pending: bool = True,
) -> List[VideoRecord]:
    """Persist a freshly parsed channel listing and prepare every video's status."""
    videos: List[VideoRecord] = []
    for raw in raw_videos:
        video = VideoRecord.from_raw(raw)
        if video is None:
            log_warning(f"[channel={channel_id}] Skipping listing entry without an id")
            continue
        videos.append(video)

    store.save_channel_info(channel_id, [video.raw for video in videos])
    for video in videos:
        store.save_video_info(channel_id, video.video_id, build_video_info(video, languages))
        initialize_download_status(store, channel_id, video, languages)

    if generate_pending:
        generate_pending_downloads(store, channel_id, channel_url, videos)

    log_info(f"[channel={channel_id}] Planned {len(videos)} videos, languages={','.join(languages)}")
    return videos
