import sys
import unittest
from pathlib import Path


# Ensure `import rtl_auditor...` works when running tests from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


from rtl_auditor.config import identify_provider
from rtl_auditor.services.gemini_provider import GeminiProvider, to_gemini_schema
from rtl_auditor.services.mm_provider import ImageInput, get_multimodal_provider
from rtl_auditor.services.openai_compatible_provider import OpenAICompatibleProvider, normalize_base_url
from rtl_auditor.services.rtl_analysis_client import build_response_schema


IMAGE = ImageInput.from_data_url("data:image/jpeg;base64,AAAABASE64")


class TestOpenAICompatibleProvider(unittest.TestCase):
    def test_normalize_base_url(self):
        self.assertEqual(normalize_base_url("https://host"), "https://host/v1")
        self.assertEqual(normalize_base_url("https://host/"), "https://host/v1")
        self.assertEqual(normalize_base_url("https://host/v1"), "https://host/v1")
        self.assertEqual(normalize_base_url("https://host/compatible-mode/v1/"), "https://host/compatible-mode/v1")
        self.assertEqual(normalize_base_url(""), "")

    def test_build_payload_shape(self):
        payload = OpenAICompatibleProvider().build_payload(
            image=IMAGE,
            prompt="prompt-y",
            json_schema={"type": "object"},
            model="model-x",
            system_instruction="rules",
        )
        self.assertEqual(payload["model"], "model-x")
        self.assertEqual(payload["temperature"], 0)
        self.assertEqual(payload["messages"][0], {"role": "system", "content": "rules"})
        content = payload["messages"][1]["content"]
        self.assertEqual(content[0]["type"], "image_url")
        self.assertEqual(content[0]["image_url"]["url"], "data:image/jpeg;base64,AAAABASE64")
        self.assertEqual(content[1], {"type": "text", "text": "prompt-y"})
        self.assertEqual(payload["response_format"]["json_schema"]["name"], "rtl_audit")

    def test_content_parts_are_joined(self):
        provider = OpenAICompatibleProvider()
        raw = {"choices": [{"message": {"content": [{"type": "text", "text": '{"a":'}, {"type": "text", "text": "1}"}]}}]}
        self.assertEqual(provider.extract_structured_json(raw), {"a": 1})


class TestGeminiProvider(unittest.TestCase):
    def test_schema_types_are_upper_case(self):
        schema = to_gemini_schema(build_response_schema())
        self.assertEqual(schema["type"], "OBJECT")
        items = schema["properties"]["displayErrors"]["items"]
        self.assertEqual(schema["properties"]["displayErrors"]["type"], "ARRAY")
        self.assertEqual(items["properties"]["location"]["properties"]["x"]["type"], "NUMBER")
        self.assertEqual(items["properties"]["type"]["enum"], ["前端实现错误", "语法/语言错误", "优化建议"])

    def test_build_payload_inlines_image(self):
        payload = GeminiProvider().build_payload(image=IMAGE, prompt="p", json_schema={"type": "object"})
        parts = payload["contents"][0]["parts"]
        self.assertEqual(parts[0]["inlineData"], {"mimeType": "image/jpeg", "data": "AAAABASE64"})
        self.assertEqual(parts[1], {"text": "p"})
        self.assertEqual(payload["generationConfig"]["responseMimeType"], "application/json")
        self.assertNotIn("systemInstruction", payload)


class TestProviderSelection(unittest.TestCase):
    def test_known_names(self):
        self.assertEqual(get_multimodal_provider("gemini").name, "gemini")
        self.assertEqual(get_multimodal_provider("DashScope").name, "openai_compatible")
        with self.assertRaises(ValueError):
            get_multimodal_provider("nope")

    def test_identify_provider(self):
        self.assertEqual(identify_provider("https://generativelanguage.googleapis.com/v1beta")[0], "gemini")
        self.assertEqual(identify_provider("https://dashscope.aliyuncs.com/compatible-mode/v1")[0], "dashscope")
        self.assertEqual(identify_provider("https://example.com")[0], "unknown")


if __name__ == "__main__":
    unittest.main()
