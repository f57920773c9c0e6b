"""
Base Node class for wuerfel.

All processing nodes inherit from this base class and implement the process method.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Node(ABC):
    """
    Base class for all processing nodes in wuerfel.

    Each node represents a single processing step in the pipeline and communicates
    through standardized data interfaces.

    Example:
        class MyNode(Node):
            def process(self, frame: Frame) -> Frame:
                return frame
    """

    def __init__(self, name: Optional[str] = None):
        """
        Initialize the node.

        Args:
            name: Optional name for the node. If None, uses class name.
        """
        self.name = name or self.__class__.__name__

    @abstractmethod
    def process(self, input_data: Any) -> Any:
        """
        Process input data and return output.

        Args:
            input_data: Input data following framework interfaces

        Returns:
            Output data following framework interfaces
        """
        pass

    def __call__(self, input_data: Any = None) -> Any:
        """Run the node on input data, recording its runtime in the output metadata."""
        return self._execute(input_data)

    def _execute(self, input_data: Any) -> Any:
        """Internal execution method with timing."""
        start_time = time.time()

        try:
            output = self.process(input_data)

            runtime = time.time() - start_time
            if hasattr(output, "metadata"):
                output.metadata = output.metadata or {}
                output.metadata[f"{self.name}_runtime"] = runtime

            logger.debug(f"Node {self.name} completed in {runtime:.3f}s")

            return output

        except Exception as e:
            logger.error(f"Error in node {self.name}: {str(e)}")
            raise

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
