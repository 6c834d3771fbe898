GEMINI = "gemini"
ANTHROPIC = "anthropic"
GROQ = "groq"
OPENROUTER = "openrouter"
OPENAI = "openai"

# 走 OpenAI 兼容 /chat/completions 协议的供应商
OPENAI_LIKE = {GROQ, OPENROUTER, OPENAI}
