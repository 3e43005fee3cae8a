"""Review — change tracking, confirmation, policy guard and the judge gate."""
