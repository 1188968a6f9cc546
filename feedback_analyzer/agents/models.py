"""
Bedrock Model Factories

Chat and embedding models used by the ticket analysis pipeline, both served
by AWS Bedrock. The chat model goes through the Converse API so tool calling
works with any tool-capable Bedrock model.
"""

from typing import Optional

from langchain_aws import BedrockEmbeddings, ChatBedrockConverse

from feedback_analyzer import config


def get_chat_model(
    model_id: Optional[str] = None,
    region_name: Optional[str] = None,
    temperature: Optional[float] = None,
) -> ChatBedrockConverse:
    """
    Create the Bedrock chat model.

    Args:
        model_id: Bedrock model ID (default: Llama 3.3 70B inference profile)
        region_name: AWS region (default: AWS_DEFAULT_REGION or us-east-1)
        temperature: Sampling temperature (default: 0.1 for consistent analyses)
    """
    return ChatBedrockConverse(
        model=model_id or config.CHAT_MODEL_ID,
        region_name=region_name or config.AWS_DEFAULT_REGION,
        temperature=config.CHAT_TEMPERATURE if temperature is None else temperature,
        max_tokens=config.CHAT_MAX_TOKENS,
    )


def get_embeddings(
    model_id: Optional[str] = None,
    region_name: Optional[str] = None,
) -> BedrockEmbeddings:
    """Create the Bedrock embeddings model (Cohere English v3 by default)."""
    return BedrockEmbeddings(
        model_id=model_id or config.EMBEDDING_MODEL_ID,
        region_name=region_name or config.AWS_DEFAULT_REGION,
    )
