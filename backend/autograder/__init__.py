"""Free-text grading core: similarity scoring, rubric mapping, and the review queue."""
