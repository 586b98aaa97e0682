from pydantic import BaseModel


class ExecutionResult(BaseModel):
    """Result of running one command inside an environment container"""
    command: str
    shell: str = "sh"
    use_entrypoint: bool = False
    stdout: str = ""
    stderr: str = ""
    exit_code: int
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, the way the exec command prints them"""
        output = self.stdout
        if self.stderr:
            if output:
                output += "\n"
            output += "stderr: " + self.stderr
        return output
