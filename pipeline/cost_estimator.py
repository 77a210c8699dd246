"""Rough processing-cost bookkeeping for classification calls."""
import config


class CostEstimator:
    def __init__(self, cost_per_page: float = config.COST_PER_CLASSIFIED_PAGE):
        self.cost_per_page = cost_per_page

    def classification_cost(self, pages_sent_to_model: int) -> float:
        """Estimated USD for classifying this many pages."""
        if pages_sent_to_model <= 0:
            return 0.0
        return round(pages_sent_to_model * self.cost_per_page, 6)
