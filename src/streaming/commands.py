"""
Transcoder argument contract for both delivery modes.

Only the argument lists live here; spawning and supervision are handled by
``TranscoderSupervisor``.
"""

from .definition import StreamDefinition


def _input_args(definition: StreamDefinition) -> list[str]:
    source_url = definition.transcoder_url
    args = ["-hide_banner"]
    if source_url.lower().startswith("rtsp://"):
        args += ["-rtsp_transport", "tcp"]
    args += ["-i", source_url]
    return args


def build_broadcast_args(definition: StreamDefinition) -> list[str]:
    """
    Arguments for the binary broadcast transcoder.

    MPEG-1 video in MPEG-TS, written to stdout for JSMpeg clients. The output
    size is forced only when a resolution is configured; otherwise the source
    size is kept and sniffed from stderr for the stream header.
    """
    args = _input_args(definition)
    args += [
        "-f", "mpegts",
        "-codec:v", "mpeg1video",
    ]
    if definition.has_resolution:
        args += ["-s", f"{definition.width}x{definition.height}"]
    args += [
        "-b:v", f"{definition.bitrate_kbps}k",
        "-r", str(definition.frame_rate),
        "-an",
        "-",
    ]
    return args


def build_segmented_args(definition: StreamDefinition) -> list[str]:
    """
    Arguments for the HLS transcoder.

    The transcoder writes the playlist and segments itself and deletes
    segments that fall out of the ``playlist_size`` window.
    """
    args = _input_args(definition)
    args += [
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
    ]
    if definition.has_resolution:
        args += ["-s", f"{definition.width}x{definition.height}"]
    args += [
        "-b:v", f"{definition.bitrate_kbps}k",
        "-r", str(definition.frame_rate),
        "-an",

        # HLS output: rolling window, old segments deleted by the transcoder
        "-f", "hls",
        "-hls_time", str(definition.segment_duration),
        "-hls_list_size", str(definition.playlist_size),
        "-hls_flags", "delete_segments",
        "-hls_segment_filename", str(definition.segment_pattern),
        str(definition.playlist_path),
    ]
    return args
