"""Quality control transforms."""

from dgeflow.quality.filtering import ExpressionFilter, ExpressionFilterResult

__all__ = ['ExpressionFilter', 'ExpressionFilterResult']
