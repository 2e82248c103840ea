# LangGraph workflows
from proxyshop.workflows.purchase import PurchaseRequest, PurchaseResult, PurchaseWorkflow

__all__ = ["PurchaseWorkflow", "PurchaseRequest", "PurchaseResult"]
