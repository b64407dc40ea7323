# Action plans run through the LangGraph stage pipeline
from visionstudio.workflows.chat_agent import plan_chat_turn
from visionstudio.workflows.image_agent import plan_smart_image
from visionstudio.workflows.infographic_agent import plan_infographic, plan_infographic_edit
from visionstudio.workflows.pipeline import ActionPlan, run_pipeline

__all__ = ["ActionPlan", "run_pipeline", "plan_infographic", "plan_infographic_edit", "plan_smart_image", "plan_chat_turn"]
