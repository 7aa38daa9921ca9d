import unittest
from pathlib import Path

import presets
from errors import InvalidSelection
from probe import VideoInfo


def make_info(width, height):
    return VideoInfo(
        path=Path("/tmp/source.mp4"),
        width=width,
        height=height,
        pixel_format="yuv420p",
        framerate=24.0,
        duration_seconds=10.0,
        bitrate=None,
        video_codec="h264",
        audio_codec="aac",
        has_audio=True,
        sample_rate=48000,
        channels=2,
        color_space=None,
        color_primaries=None,
        color_transfer=None,
    )


class TestScaleFactor(unittest.TestCase):
    def test_640x360_to_1080p_needs_3x(self):
        self.assertEqual(presets.compute_scale_factor(640, 360, 1920, 1080), 3)

    def test_uneven_ratio_rounds_up_to_cover_target(self):
        # 1080 / 352 = 3.07 -> 4 so both dimensions reach the target
        self.assertEqual(presets.compute_scale_factor(640, 352, 1920, 1080), 4)

    def test_factor_clamped_to_max(self):
        self.assertEqual(presets.compute_scale_factor(320, 180, 3840, 2160), 4)

    def test_factor_clamped_to_min(self):
        self.assertEqual(presets.compute_scale_factor(3840, 2160, 1920, 1080), 1)
        self.assertEqual(
            presets.compute_scale_factor(3840, 2160, 1920, 1080, min_scale=2), 2
        )

    def test_rejects_zero_source(self):
        with self.assertRaises(ValueError):
            presets.compute_scale_factor(0, 360, 1920, 1080)


class TestResolveTarget(unittest.TestCase):
    def test_fixed_preset_parses_nominal_resolution(self):
        target = presets.resolve_target(presets.get_preset("youtube_4k"), make_info(640, 360))
        self.assertEqual((target.width, target.height, target.mode), (3840, 2160, "fixed"))

    def test_null_resolution_matches_source(self):
        target = presets.resolve_target(presets.get_preset("prores_hq"), make_info(720, 480))
        self.assertEqual((target.width, target.height), (720, 480))
        self.assertEqual(target.mode, presets.MODE_MATCH_SOURCE)

    def test_parse_resolution_accepts_x_separator(self):
        self.assertEqual(presets.parse_resolution("1280x720"), (1280, 720))

    def test_parse_resolution_rejects_garbage(self):
        for value in ("1920", "a:b", "0:1080", "1:2:3"):
            with self.assertRaises(ValueError):
                presets.parse_resolution(value)

    def test_unknown_preset_is_invalid_selection(self):
        with self.assertRaises(InvalidSelection):
            presets.get_preset("nope")

    def test_catalog_resolutions_parse(self):
        for preset in presets.PRESETS.values():
            if preset.resolution is not None:
                presets.parse_resolution(preset.resolution)


class TestAdvisories(unittest.TestCase):
    def test_same_resolution_has_limited_benefit(self):
        info = make_info(1920, 1080)
        plan = presets.plan_resolution(presets.get_preset("youtube_1080p"), info)
        kinds = [advisory.kind for advisory in plan.advisories]
        self.assertEqual(kinds, [presets.ADVISORY_LIMITED_BENEFIT])

    def test_downscale_target_flags_wasted_upscale(self):
        info = make_info(2560, 1440)
        plan = presets.plan_resolution(presets.get_preset("youtube_1080p"), info)
        kinds = [advisory.kind for advisory in plan.advisories]
        self.assertEqual(kinds, [presets.ADVISORY_UPSCALE_THEN_DOWNSCALE])
        self.assertEqual(plan.scale, 1)

    def test_plain_upscale_has_no_advisory(self):
        plan = presets.plan_resolution(presets.get_preset("youtube_1080p"), make_info(640, 360))
        self.assertEqual(plan.advisories, [])
        self.assertEqual(plan.scale, 3)
        self.assertFalse(plan.needs_normalization)

    def test_plan_flags_normalization_when_prescale_overshoots(self):
        plan = presets.plan_resolution(presets.get_preset("youtube_1080p"), make_info(640, 352))
        self.assertEqual((plan.prescale_width, plan.prescale_height), (2560, 1408))
        self.assertTrue(plan.needs_normalization)


class TestModelScales(unittest.TestCase):
    def test_factor_below_model_minimum_is_raised(self):
        self.assertEqual(presets.fit_scale_to_model(1, "realesr-animevideov3"), 2)
        self.assertEqual(presets.fit_scale_to_model(3, "realesr-animevideov3"), 3)
        self.assertEqual(presets.fit_scale_to_model(2, "realesrgan-x4plus"), 4)

    def test_unsatisfiable_range_raises(self):
        with self.assertRaises(InvalidSelection):
            presets.fit_scale_to_model(1, "realesrgan-x4plus", min_scale=1, max_scale=3)

    def test_match_source_plan_upscales_then_normalizes_back(self):
        plan = presets.plan_resolution(
            presets.get_preset("archive_ffv1"), make_info(1280, 720), model="realesr-animevideov3"
        )
        self.assertEqual(plan.scale, 2)
        self.assertEqual((plan.prescale_width, plan.prescale_height), (2560, 1440))
        self.assertEqual((plan.target.width, plan.target.height), (1280, 720))
        self.assertTrue(plan.needs_normalization)

    def test_source_at_target_uses_smallest_supported_scale(self):
        plan = presets.plan_resolution(
            presets.get_preset("youtube_1080p"), make_info(1920, 1080), model="realesrgan-x4plus"
        )
        self.assertEqual(plan.scale, 4)
        self.assertEqual(
            [a.kind for a in plan.advisories], [presets.ADVISORY_LIMITED_BENEFIT]
        )


if __name__ == "__main__":
    unittest.main()
