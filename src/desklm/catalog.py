"""Static catalog of selectable models."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator

from .errors import CatalogInvariantError, ModelNotFound

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

_REPO_ID = re.compile(r"^[A-Za-z0-9][\w.-]*/[\w.-]+$")


class ModelCategory(str, Enum):
    CORE = "core"
    REASONING = "reasoning"
    VISION = "vision"
    AUDIO = "audio"
    EMBEDDING = "embedding"


@dataclass(frozen=True)
class ModelDescriptor:
    name: str
    display_name: str
    provider: str
    size_bytes: int
    category: ModelCategory
    repo: str
    description: str = ""
    compression: str | None = None

    @property
    def repo_id(self) -> str:
        """Hugging Face repository id used for downloads.

        Catalog entries must point at a hub repository; a local directory or a
        URL here means the catalog itself is broken.
        """
        if not _REPO_ID.match(self.repo):
            raise CatalogInvariantError(
                f"{self.name}: unsupported model identifier {self.repo!r}, expected 'org/name'"
            )
        return self.repo


def _model(
    category: ModelCategory,
    name: str,
    display_name: str,
    provider: str,
    size_gb: float,
    repo: str,
    description: str,
    compression: str | None = None,
) -> ModelDescriptor:
    return ModelDescriptor(
        name=name,
        display_name=display_name,
        provider=provider,
        size_bytes=int(size_gb * GIB),
        category=category,
        repo=repo,
        description=description,
        compression=compression,
    )


class ModelCatalog:
    """Ordered, per-category model registry.

    Names are looked up across categories in declaration order, so a name that
    appears in two categories resolves to the first one.
    """

    def __init__(
        self,
        models: dict[ModelCategory, list[ModelDescriptor]],
        defaults: dict[ModelCategory, str],
    ) -> None:
        self._models = {category: list(items) for category, items in models.items()}
        self._defaults = dict(defaults)
        for category, name in self._defaults.items():
            if not any(m.name == name for m in self._models.get(category, [])):
                raise CatalogInvariantError(f"Default {category.value} model {name!r} is not in the catalog")

    def categories(self) -> list[ModelCategory]:
        return [c for c in ModelCategory if self._models.get(c)]

    def descriptors_for(self, category: ModelCategory) -> list[ModelDescriptor]:
        return list(self._models.get(category, []))

    def default_descriptor(self, category: ModelCategory) -> ModelDescriptor:
        name = self._defaults.get(category)
        if name is None:
            raise ModelNotFound(f"<default {category.value}>")
        return self.descriptor_by_name(name)

    def descriptor_by_name(self, name: str) -> ModelDescriptor:
        for model in self:
            if model.name == name:
                return model
        raise ModelNotFound(name)

    def resolve(self, name: str | None, category: ModelCategory) -> ModelDescriptor:
        """Look up ``name``, falling back to the category default."""
        if name:
            try:
                return self.descriptor_by_name(name)
            except ModelNotFound:
                logger.warning("Model %s is not in the catalog, using the %s default", name, category.value)
        return self.default_descriptor(category)

    def with_extra(self, extra: Iterable[ModelDescriptor]) -> "ModelCatalog":
        models = {category: list(items) for category, items in self._models.items()}
        for descriptor in extra:
            models.setdefault(descriptor.category, []).append(descriptor)
        return ModelCatalog(models, self._defaults)

    def __iter__(self) -> Iterator[ModelDescriptor]:
        for category in ModelCategory:
            yield from self._models.get(category, [])

    def __len__(self) -> int:
        return sum(len(items) for items in self._models.values())

    def __contains__(self, name: object) -> bool:
        return any(model.name == name for model in self)


_CORE = ModelCategory.CORE
_REASONING = ModelCategory.REASONING
_VISION = ModelCategory.VISION
_AUDIO = ModelCategory.AUDIO
_EMBEDDING = ModelCategory.EMBEDDING

DEFAULT_MODELS: dict[ModelCategory, list[ModelDescriptor]] = {
    _CORE: [
        _model(_CORE, "Llama-3.2-1B-Instruct-4bit", "Llama 3.2 1B Instruct (4-bit)", "Meta", 0.7,
               "meta-llama/Llama-3.2-1B-Instruct", "Smallest, lightweight Llama model", "4bit"),
        _model(_CORE, "Llama-3.2-3B-Instruct-4bit", "Llama 3.2 3B Instruct (4-bit)", "Meta", 1.8,
               "meta-llama/Llama-3.2-3B-Instruct", "Lightweight Llama model", "4bit"),
        _model(_CORE, "Hermes-3-Llama-3.2-3B-bf16", "Hermes 3 Llama 3.2 3B (bf16)", "Nous Research", 6.43,
               "NousResearch/Hermes-3-Llama-3.2-3B", "Hermes-3 improved instruction following"),
        _model(_CORE, "Llama-3.3-70B-Instruct-4bit", "Llama 3.3 70B Instruct (4-bit)", "Meta", 39.7,
               "meta-llama/Llama-3.3-70B-Instruct", "Medium-sized Llama model for advanced reasoning", "4bit"),
        _model(_CORE, "gemma-2-27b-it-4bit", "Gemma 2 27B IT (4-bit)", "Google", 15.32,
               "google/gemma-2-27b-it", "Instruction-tuned model optimized for conversational AI", "4bit"),
        _model(_CORE, "phi-4-4bit", "Phi 4 (4-bit)", "Microsoft", 8.25,
               "microsoft/phi-4", "Optimized for code, math, and conversational tasks", "4bit"),
        _model(_CORE, "phi-4-8bit", "Phi 4 (8-bit)", "Microsoft", 15.57,
               "microsoft/phi-4", "Higher precision Phi-4 for code, math, and conversation", "8bit"),
        _model(_CORE, "mistral-small-24b-instruct-2501-4bit", "Mistral Small 24B Instruct (4-bit)", "Mistral AI", 13.3,
               "mistralai/Mistral-Small-24B-Instruct-2501", "Mistral model optimized for instruction-following", "4bit"),
        _model(_CORE, "mistral-small-24b-instruct-2501-8bit", "Mistral Small 24B Instruct (8-bit)", "Mistral AI", 25.03,
               "mistralai/Mistral-Small-24B-Instruct-2501", "Higher precision Mistral for instruction-following", "8bit"),
        _model(_CORE, "DeepSeek-R1-Distill-Qwen-32B-4bit", "DeepSeek R1 Distill Qwen 32B (4-bit)", "DeepSeek", 18.44,
               "deepseek-ai/DeepSeek-R1-Distill-Qwen-32B", "Large-scale reasoning model", "4bit"),
        _model(_CORE, "Qwen2.5-32B-Instruct-4bit", "Qwen 2.5 32B Instruct (4-bit)", "Qwen", 18.44,
               "Qwen/Qwen2.5-32B-Instruct", "Powerful conversational model with strong chat capabilities", "4bit"),
        _model(_CORE, "QwQ-32B-4bit", "QwQ 32B (4-bit)", "Qwen", 18.44,
               "Qwen/QwQ-32B", "Conversational model with thinking capabilities", "4bit"),
        _model(_CORE, "watt-tool-8B", "Watt Tool 8B", "Watt", 4.52,
               "watt-ai/watt-tool-8B", "Specialized for function-calling and tool use"),
    ],
    _REASONING: [
        _model(_REASONING, "deepseek-r1-distill-qwen-1.5b-4bit", "DeepSeek R1 Distill Qwen 1.5B (4-bit)", "DeepSeek", 1.0,
               "deepseek-ai/DeepSeek-R1-Distill-Qwen-1.5B", "Efficient reasoning model from DeepSeek", "4bit"),
        _model(_REASONING, "deepseek-r1-distill-qwen-1.5b-8bit", "DeepSeek R1 Distill Qwen 1.5B (8-bit)", "DeepSeek", 1.9,
               "deepseek-ai/DeepSeek-R1-Distill-Qwen-1.5B", "Higher precision DeepSeek reasoning model", "8bit"),
        _model(_REASONING, "DeepHermes-3-Llama-3-8B-Preview-4bit", "Deep Hermes 3 Llama 3 8B Preview (4-bit)", "Nous Research", 4.52,
               "NousResearch/DeepHermes-3-Llama-3-8B-Preview", "Reasoning with function calling and JSON output", "4bit"),
        _model(_REASONING, "Dolphin3.0-R1-Mistral-24B-8bit", "Dolphin 3.0 R1 Mistral 24B (8-bit)", "Cognitive Computations", 19.15,
               "cognitivecomputations/Dolphin3.0-R1-Mistral-24B", "Conversational reasoning on a Mistral base", "8bit"),
        _model(_REASONING, "DeepSeek-R1-Distill-Qwen-32B-8bit", "DeepSeek R1 Distill Qwen 32B (8-bit)", "DeepSeek", 35.0,
               "deepseek-ai/DeepSeek-R1-Distill-Qwen-32B", "High-precision large-scale reasoning model", "8bit"),
    ],
    _VISION: [
        _model(_VISION, "pixtral-12b-4bit", "Pixtral 12B (4-bit)", "Mistral AI", 7.14,
               "mistral-community/pixtral-12b", "Vision language model from Mistral", "4bit"),
        _model(_VISION, "Qwen2.5-VL-7B-Instruct-8bit", "Qwen 2.5 VL 7B Instruct (8-bit)", "Alibaba Cloud", 8.94,
               "Qwen/Qwen2.5-VL-7B-Instruct", "Multimodal model with strong image understanding", "8bit"),
        _model(_VISION, "gemma-3-12b-it-4bit", "Gemma 3 12B IT (4-bit)", "Google", 5.37,
               "google/gemma-3-12b-it", "Conversational model optimized for image-text tasks", "4bit"),
        _model(_VISION, "gemma-3-4b-it-8bit", "Gemma 3 4B IT (8-bit)", "Google", 4.96,
               "google/gemma-3-4b-it", "Conversational model optimized for image-text tasks", "8bit"),
        _model(_VISION, "Qwen2.5-VL-7B-Instruct-bf16", "Qwen 2.5 VL 7B Instruct (bf16)", "Alibaba Cloud", 16.58,
               "Qwen/Qwen2.5-VL-7B-Instruct", "Full precision multimodal conversational model"),
    ],
    _AUDIO: [
        _model(_AUDIO, "whisper-large-v3-turbo", "Whisper Large V3 Turbo", "OpenAI", 1.61,
               "openai/whisper-large-v3-turbo", "Efficient Whisper model for speech processing"),
    ],
    _EMBEDDING: [
        _model(_EMBEDDING, "snowflake-arctic-embed2", "Snowflake Arctic Embed 2", "Snowflake", 0.6,
               "Snowflake/snowflake-arctic-embed-l-v2.0", "Latest Snowflake model with multilingual support"),
        _model(_EMBEDDING, "bge-m3", "BGE M3", "BAAI", 0.3,
               "BAAI/bge-m3", "BAAI's versatile multilingual model"),
        _model(_EMBEDDING, "mxbai-embed-large", "MxBai Embed Large", "MixedBread.ai", 0.17,
               "mixedbread-ai/mxbai-embed-large-v1", "MixedBread.ai's large model"),
        _model(_EMBEDDING, "granite-embedding-278m", "Granite Embedding 278M", "IBM", 0.14,
               "ibm-granite/granite-embedding-278m-multilingual", "IBM's multilingual model"),
        _model(_EMBEDDING, "bge-large", "BGE Large", "BAAI", 0.17,
               "BAAI/bge-large-en-v1.5", "BAAI's English model"),
        _model(_EMBEDDING, "nomic-embed-text", "Nomic Embed Text", "Nomic", 0.008,
               "nomic-ai/nomic-embed-text-v1.5", "High-performing with large context"),
        _model(_EMBEDDING, "granite-embedding-30m", "Granite Embedding 30M", "IBM", 0.015,
               "ibm-granite/granite-embedding-30m-english", "IBM's English-only model"),
        _model(_EMBEDDING, "all-minilm-33m", "All-MiniLM 33M", "Microsoft", 0.017,
               "sentence-transformers/all-MiniLM-L12-v2", "Efficient small model"),
    ],
}

DEFAULT_SELECTIONS: dict[ModelCategory, str] = {
    _CORE: "mistral-small-24b-instruct-2501-4bit",
    _REASONING: "DeepHermes-3-Llama-3-8B-Preview-4bit",
    _VISION: "gemma-3-12b-it-4bit",
    _AUDIO: "whisper-large-v3-turbo",
    _EMBEDDING: "nomic-embed-text",
}

DEFAULT_CATALOG = ModelCatalog(DEFAULT_MODELS, DEFAULT_SELECTIONS)
