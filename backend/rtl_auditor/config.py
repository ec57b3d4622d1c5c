"""配置文件 - 从环境变量加载配置"""
import os
from dotenv import load_dotenv

# 加载.env文件
load_dotenv()

# 大模型配置
_LLM_API_KEY_ENV = os.getenv("RTL_AUDIT_API_KEY", "") or os.getenv("GEMINI_API_KEY", "")
# 为空时使用所选提供商的默认地址
_LLM_API_BASE_ENV = os.getenv("RTL_AUDIT_API_BASE", "")
_LLM_MODEL_ENV = os.getenv("RTL_AUDIT_MODEL", "gemini-3-flash-preview")

MULTIMODAL_PROVIDER = os.getenv("MULTIMODAL_PROVIDER", "gemini")
ANALYSIS_TIMEOUT_SEC = int(os.getenv("MULTIMODAL_AUDIT_TIMEOUT_SEC", "90") or "90")

_llm_api_key_override = None
_llm_api_base_override = None
_llm_model_override = None


def get_llm_config():
    api_key = _llm_api_key_override if _llm_api_key_override is not None else _LLM_API_KEY_ENV
    api_base = _llm_api_base_override if _llm_api_base_override is not None else _LLM_API_BASE_ENV
    model = _llm_model_override if _llm_model_override is not None else _LLM_MODEL_ENV
    return api_key, api_base, model


def set_llm_config(api_key=None, api_base=None, model=None):
    global _llm_api_key_override, _llm_api_base_override, _llm_model_override
    if api_key is not None:
        _llm_api_key_override = api_key
    if api_base is not None:
        _llm_api_base_override = api_base
    if model is not None:
        _llm_model_override = model


def clear_llm_api_key():
    """删除运行时设置的密钥，恢复使用环境变量中的密钥"""
    global _llm_api_key_override
    _llm_api_key_override = None


def reset_llm_config():
    global _llm_api_key_override, _llm_api_base_override, _llm_model_override
    _llm_api_key_override = None
    _llm_api_base_override = None
    _llm_model_override = None


def identify_provider(api_base: str):
    provider = "unknown"
    provider_name = "已配置 API"

    if "generativelanguage" in api_base:
        provider = "gemini"
        provider_name = "已配置 Google Gemini"
    elif "dashscope" in api_base:
        provider = "dashscope"
        provider_name = "已配置通义千问 (DashScope)"
    elif "bigmodel" in api_base:
        provider = "zhipu"
        provider_name = "已配置智谱 AI (GLM-4V)"
    elif "openai" in api_base:
        provider = "openai"
        provider_name = "已配置 OpenAI API"

    return provider, provider_name


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "y"}


# 历史记录存储
HISTORY_STORE_DIR = os.getenv("HISTORY_STORE_DIR", "./doc_store")
HISTORY_STORAGE_KEY = "rtl_audit_history"

# 图片预处理
MAX_IMAGE_EDGE = int(os.getenv("MAX_IMAGE_EDGE", "1600"))
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", "20"))  # MB

# 分析调度
AUTO_ANALYZE = _env_flag("AUTO_ANALYZE", "true")
TOAST_TTL_MS = 4000
OVERLAY_STREAM_FPS = max(1, int(os.getenv("OVERLAY_STREAM_FPS", "10") or "10"))

# API 密钥 Cookie（一年有效）
API_KEY_COOKIE_NAME = "rtl_audit_api_key"
API_KEY_COOKIE_MAX_AGE = 365 * 24 * 60 * 60

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS 配置
_cors_origins = os.getenv("CORS_ORIGINS", "*")
if _cors_origins.strip() == "*":
    CORS_ORIGINS = ["*"]
else:
    CORS_ORIGINS = [origin.strip() for origin in _cors_origins.split(",") if origin.strip()]
CORS_ALLOW_CREDENTIALS = os.getenv("CORS_ALLOW_CREDENTIALS", "false").lower() == "true"
