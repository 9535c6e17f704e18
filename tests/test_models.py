"""
Tests for descriptors, policies and result types.
"""

import unittest

from edge_inference.models import (
    BoundingBox,
    ClassificationResult,
    InferencePolicy,
    LabelScore,
    ModelDescriptor,
    ModelOrigin,
    OcrBlock,
    OcrResult,
)


class TestInferencePolicy(unittest.TestCase):

    def test_primary_and_fallback(self):
        self.assertEqual(InferencePolicy.ON_DEVICE_ONLY.primary, ModelOrigin.ON_DEVICE)
        self.assertIsNone(InferencePolicy.ON_DEVICE_ONLY.fallback)
        self.assertEqual(InferencePolicy.CLOUD_ONLY.primary, ModelOrigin.CLOUD)
        self.assertIsNone(InferencePolicy.CLOUD_ONLY.fallback)
        self.assertEqual(InferencePolicy.PREFER_ON_DEVICE.primary, ModelOrigin.ON_DEVICE)
        self.assertEqual(InferencePolicy.PREFER_ON_DEVICE.fallback, ModelOrigin.CLOUD)
        self.assertEqual(InferencePolicy.PREFER_CLOUD.primary, ModelOrigin.CLOUD)
        self.assertEqual(InferencePolicy.PREFER_CLOUD.fallback, ModelOrigin.ON_DEVICE)

    def test_parse_spellings(self):
        self.assertIs(InferencePolicy.parse("prefer-cloud"), InferencePolicy.PREFER_CLOUD)
        self.assertIs(InferencePolicy.parse("ON_DEVICE_ONLY"), InferencePolicy.ON_DEVICE_ONLY)
        self.assertIs(InferencePolicy.parse(InferencePolicy.CLOUD_ONLY), InferencePolicy.CLOUD_ONLY)

    def test_parse_invalid(self):
        with self.assertRaises(ValueError) as ctx:
            InferencePolicy.parse("sometimes")
        self.assertIn("prefer_on_device", str(ctx.exception))

    def test_origin_other(self):
        self.assertIs(ModelOrigin.ON_DEVICE.other, ModelOrigin.CLOUD)
        self.assertIs(ModelOrigin.CLOUD.other, ModelOrigin.ON_DEVICE)


class TestModelDescriptor(unittest.TestCase):

    def test_size_formatted(self):
        self.assertEqual(ModelDescriptor("m", "m", size_bytes=512).size_formatted, "512 B")
        self.assertEqual(ModelDescriptor("m", "m", size_bytes=2048).size_formatted, "2.00 KB")
        self.assertEqual(
            ModelDescriptor("m", "m", size_bytes=5 * 1024 * 1024).size_formatted, "5.00 MB"
        )
        self.assertEqual(
            ModelDescriptor("m", "m", size_bytes=3 * 1024 ** 3).size_formatted, "3.00 GB"
        )

    def test_immutable(self):
        descriptor = ModelDescriptor("m", "m")
        with self.assertRaises(Exception):
            descriptor.priority = 5

    def test_to_dict(self):
        data = ModelDescriptor("m", "Model", origin=ModelOrigin.CLOUD, priority=2).to_dict()
        self.assertEqual(data["origin"], "cloud")
        self.assertEqual(data["priority"], 2)
        self.assertEqual(data["framework"], "unknown")


class TestResults(unittest.TestCase):

    def test_ranked_filters_and_sorts(self):
        result = ClassificationResult.ranked(
            [LabelScore("a", 0.1), LabelScore("b", 0.9), LabelScore("c", 0.5)], threshold=0.5
        )
        self.assertEqual([label.label for label in result.labels], ["b", "c"])
        self.assertEqual(result.top.label, "b")

    def test_empty_top(self):
        self.assertIsNone(ClassificationResult(labels=()).top)

    def test_bounding_box(self):
        box = BoundingBox(left=1, top=2, right=11, bottom=7)
        self.assertEqual(box.width, 10)
        self.assertEqual(box.height, 5)

    def test_ocr_above_threshold(self):
        result = OcrResult(text="a b", blocks=(OcrBlock("a", 0.9), OcrBlock("b", 0.2)))
        self.assertEqual([b.text for b in result.above_threshold(0.5)], ["a"])


if __name__ == "__main__":
    unittest.main()
