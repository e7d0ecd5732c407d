import os
from typing import Optional

import numpy as np
import torch
from peft import PeftModel
from transformers import WhisperForConditionalGeneration

from voicepilot.utils import logger

logger = logger.get_logger("WhisperInference")

# Room left for the decoder prompt (start-of-transcript, language and task tags)
PROMPT_RESERVE = 8


class WhisperInferenceModel:
    """
    Whisper checkpoint with optional LoRA adapters, cached locally to avoid redownloading.

    Shapes are read once from the model config and never change afterwards.
    """

    CACHE_DIR = "./models/hf_cache"

    def __init__(
        self,
        model_checkpoint: str,
        device: str = "cpu",
        adapter_path: Optional[str] = None,
        merge_adapters: bool = True,
        multilingual: bool = False,
    ):
        self.device = device
        self.multilingual = multilingual

        os.makedirs(self.CACHE_DIR, exist_ok=True)
        model = self._load_base_model(model_checkpoint)

        if adapter_path:
            logger.info(f"Attaching LoRA adapter from {adapter_path}")
            model = PeftModel.from_pretrained(model, adapter_path)
            if merge_adapters:
                model = model.merge_and_unload()

        self.model = model
        self.model.to(self.device)
        self.model.eval()

        config = self.model.config
        self.input_shape = (1, config.num_mel_bins, 2 * config.max_source_positions)
        self.output_length = config.max_target_positions
        self.eot_id = self.model.generation_config.eos_token_id
        logger.info(f"Whisper ready: input {self.input_shape}, output {self.output_length} tokens")

    def _load_base_model(self, model_checkpoint: str) -> WhisperForConditionalGeneration:
        """
        Load the base model from the local cache if available,
        otherwise download and cache it.
        """
        if os.path.isdir(model_checkpoint):
            return WhisperForConditionalGeneration.from_pretrained(model_checkpoint)

        cache_name = model_checkpoint.replace("/", "--")
        model_cache_path = os.path.join(self.CACHE_DIR, cache_name)

        if os.path.exists(model_cache_path) and os.listdir(model_cache_path):
            try:
                return WhisperForConditionalGeneration.from_pretrained(model_cache_path)
            except Exception as e:
                logger.warning(f"Failed to load cached model: {e}")

        base_model = WhisperForConditionalGeneration.from_pretrained(model_checkpoint)
        base_model.save_pretrained(model_cache_path)
        return base_model

    def run(self, input_buffer: np.ndarray, output_buffer: np.ndarray) -> None:
        features = torch.from_numpy(input_buffer).to(self.device)

        generate_kwargs = {"max_new_tokens": self.output_length - PROMPT_RESERVE}
        if self.multilingual:
            generate_kwargs.update(language="en", task="transcribe")

        with torch.no_grad():
            predicted_ids = self.model.generate(input_features=features, **generate_kwargs)

        ids = predicted_ids[0].cpu().numpy().astype(np.int32)
        output_buffer.fill(self.eot_id)
        count = min(len(ids), len(output_buffer))
        output_buffer[:count] = ids[:count]
