from dataclasses import dataclass


@dataclass
class RetryPolicy:
    base_delay_s: float = 2.0
    max_delay_s: float = 30.0
    max_attempts: int = 5
    attempt: int = 0

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt ``attempt`` (1-based): base * 2^(n-1), capped."""
        n = max(1, int(attempt))
        # Cap the exponent so large attempt numbers never overflow the float.
        exponent = min(n - 1, 62)
        return min(self.base_delay_s * (2.0**exponent), self.max_delay_s)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        self.attempt += 1
        return self.delay_for(self.attempt)

    def reset(self) -> None:
        self.attempt = 0
