import json
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import probe
from errors import ProbeError


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(
        args=["ffprobe"], returncode=returncode, stdout=stdout, stderr=stderr
    )


SOURCE_PAYLOAD = {
    "streams": [
        {
            "codec_type": "video",
            "codec_name": "h264",
            "width": 640,
            "height": 360,
            "pix_fmt": "yuv420p",
            "avg_frame_rate": "30000/1001",
            "color_space": "bt709",
            "color_primaries": "bt709",
            "color_transfer": "bt709",
        },
        {
            "codec_type": "audio",
            "codec_name": "aac",
            "sample_rate": "48000",
            "channels": 2,
        },
    ],
    "format": {"duration": "12.5", "bit_rate": "800000"},
}


class TestParseFramerate(unittest.TestCase):
    def test_rational_is_reduced(self):
        self.assertAlmostEqual(probe.parse_framerate("30000/1001"), 29.97, places=2)

    def test_plain_decimal(self):
        self.assertEqual(probe.parse_framerate("25"), 25.0)

    def test_zero_denominator_falls_back(self):
        self.assertEqual(probe.parse_framerate("0/0"), probe.DEFAULT_FPS)

    def test_garbage_and_empty_fall_back(self):
        for value in ("", None, "abc", "-5", "1000"):
            self.assertEqual(probe.parse_framerate(value), probe.DEFAULT_FPS)


class TestGetVideoInfo(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.source = Path(self._tmp.name) / "clip.mp4"
        self.source.write_bytes(b"data")

    def tearDown(self):
        self._tmp.cleanup()

    def test_parses_full_metadata(self):
        with mock.patch(
            "probe.run_subprocess", return_value=completed(json.dumps(SOURCE_PAYLOAD))
        ):
            info = probe.get_video_info("ffprobe", self.source)

        self.assertEqual((info.width, info.height), (640, 360))
        self.assertAlmostEqual(info.framerate, 29.97, places=2)
        self.assertEqual(info.duration_seconds, 12.5)
        self.assertEqual(info.bitrate, 800000)
        self.assertTrue(info.has_audio)
        self.assertEqual(info.audio_codec, "aac")
        self.assertEqual(info.sample_rate, 48000)
        self.assertEqual(info.channels, 2)
        self.assertEqual(info.color_space, "bt709")
        self.assertEqual(info.pixel_format, "yuv420p")

    def test_missing_path_raises_without_running_probe(self):
        with mock.patch("probe.run_subprocess") as run_mock:
            with self.assertRaises(ProbeError):
                probe.get_video_info("ffprobe", self.source.with_name("missing.mp4"))
        run_mock.assert_not_called()

    def test_empty_output_raises(self):
        with mock.patch("probe.run_subprocess", return_value=completed("  ")):
            with self.assertRaises(ProbeError):
                probe.get_video_info("ffprobe", self.source)

    def test_unparseable_output_raises(self):
        with mock.patch("probe.run_subprocess", return_value=completed("not json")):
            with self.assertRaises(ProbeError):
                probe.get_video_info("ffprobe", self.source)

    def test_nonzero_exit_raises(self):
        with mock.patch(
            "probe.run_subprocess", return_value=completed(returncode=1, stderr="bad input")
        ):
            with self.assertRaises(ProbeError) as ctx:
                probe.get_video_info("ffprobe", self.source)
        self.assertIn("bad input", str(ctx.exception))

    def test_audio_only_file_raises(self):
        payload = {"streams": [{"codec_type": "audio", "codec_name": "mp3"}]}
        with mock.patch("probe.run_subprocess", return_value=completed(json.dumps(payload))):
            with self.assertRaises(ProbeError):
                probe.get_video_info("ffprobe", self.source)


class TestImageAndStreams(unittest.TestCase):
    def test_get_image_size(self):
        payload = {"streams": [{"codec_type": "video", "width": 1920, "height": 1080}]}
        with tempfile.TemporaryDirectory() as temp_dir:
            image = Path(temp_dir) / "frame_000001.png"
            image.write_bytes(b"png")
            with mock.patch("probe.run_subprocess", return_value=completed(json.dumps(payload))):
                self.assertEqual(probe.get_image_size("ffprobe", image), (1920, 1080))

    def test_get_stream_kinds(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            video = Path(temp_dir) / "out.mp4"
            video.write_bytes(b"data")
            with mock.patch(
                "probe.run_subprocess", return_value=completed(json.dumps(SOURCE_PAYLOAD))
            ):
                self.assertEqual(probe.get_stream_kinds("ffprobe", video), {"video", "audio"})


if __name__ == "__main__":
    unittest.main()
