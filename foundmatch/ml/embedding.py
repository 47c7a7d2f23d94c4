"""Visual ("DNA") embedding model for FoundMatch.

A ResNet-18 backbone with its classification head removed; the 512-dim
global-pooled activations are L2-normalised and used as the photo's
embedding vector.

Usage:
    from foundmatch.ml.embedding import EmbeddingModel

    model = EmbeddingModel(weights_path="models/resnet18_embedding.pth")
    vector = model(pil_image)   # list[float], len 512
"""

from __future__ import annotations

from pathlib import Path

import structlog
import torch
import torch.nn.functional as F
from PIL import Image
from torchvision import models, transforms

logger = structlog.get_logger(__name__)

# ImageNet normalization constants
IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]
INPUT_SIZE = 224

inference_transform = transforms.Compose([
    transforms.Resize(256),
    transforms.CenterCrop(INPUT_SIZE),
    transforms.ToTensor(),
    transforms.Normalize(mean=IMAGENET_MEAN, std=IMAGENET_STD),
])


class EmbeddingModel:
    """Frozen ResNet-18 feature extractor producing unit-length vectors."""

    def __init__(
        self,
        weights_path: str = "models/resnet18_embedding.pth",
        embedding_dim: int = 512,
        device: str | None = None,
    ) -> None:
        """Load the backbone weights.

        Args:
            weights_path: ``state_dict`` checkpoint for a torchvision
                ResNet-18 (the ``fc`` keys, if present, are ignored).
            embedding_dim: Expected vector size (512 for ResNet-18).
            device: Force a device ("cpu" / "cuda"). If ``None``, auto-detect.

        Raises:
            FileNotFoundError: If the checkpoint does not exist.
        """
        if device is not None:
            self.device = torch.device(device)
        elif torch.cuda.is_available():
            self.device = torch.device("cuda")
        else:
            self.device = torch.device("cpu")

        path = Path(weights_path)
        if not path.exists():
            raise FileNotFoundError(f"Embedding weights not found: {path}")

        backbone = models.resnet18(weights=None)
        state = torch.load(path, map_location="cpu", weights_only=True)
        state = {k: v for k, v in state.items() if not k.startswith("fc.")}
        backbone.load_state_dict(state, strict=False)
        backbone.fc = torch.nn.Identity()
        backbone.eval()
        for param in backbone.parameters():
            param.requires_grad_(False)

        self.model = backbone.to(self.device)
        self.embedding_dim = embedding_dim

        logger.info(
            "embedding.init",
            device=str(self.device),
            weights=str(path),
            embedding_dim=embedding_dim,
        )

    @torch.no_grad()
    def __call__(self, image: Image.Image) -> list[float]:
        tensor = inference_transform(image.convert("RGB")).unsqueeze(0).to(self.device)
        features = self.model(tensor)
        features = F.normalize(features, p=2, dim=1)
        vector = features.squeeze(0).cpu().tolist()
        if len(vector) != self.embedding_dim:
            raise ValueError(
                f"Embedding size {len(vector)} != expected {self.embedding_dim}"
            )
        return [round(v, 6) for v in vector]
