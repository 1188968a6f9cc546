"""
Screenshot Analysis Tool

Lets the intake stage ask the (multimodal) model to describe a screenshot
attached to a feedback ticket.
"""

import logging

from langchain_core.messages import HumanMessage
from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field

from feedback_analyzer.engine.model import message_text

logger = logging.getLogger(__name__)

TOOL_NAME = "analyze_screenshot"

SCREENSHOT_INSTRUCTION = "You describe screenshots attached to mobile app feedback tickets."

SCREENSHOT_ANALYSIS_PROMPT = (
    "Analyze the screenshot attached to this user feedback. "
    "If an image is provided, describe the problem it shows."
)


class ScreenshotInput(BaseModel):
    image_base64: str = Field(default="", description="Base64-encoded PNG or JPEG screenshot")


def create_screenshot_analysis_tool(model) -> BaseTool:
    """
    Build the analyze_screenshot tool.

    Args:
        model: ModelCapability used to describe the image

    Failures come back as text so the stage can carry on without the image.
    """

    def analyze_screenshot(image_base64: str = "") -> str:
        content = [{"type": "text", "text": SCREENSHOT_ANALYSIS_PROMPT}]
        if image_base64:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{image_base64}"},
            })

        try:
            reply = model.complete(SCREENSHOT_INSTRUCTION, [HumanMessage(content=content)], ())
        except Exception as e:
            logger.warning("Screenshot analysis failed: %s", e)
            return f"Screenshot analysis failed: {e}"

        return message_text(reply)

    return StructuredTool.from_function(
        func=analyze_screenshot,
        name=TOOL_NAME,
        description="Analyze a screenshot from user feedback and extract the problem it shows.",
        args_schema=ScreenshotInput,
    )
