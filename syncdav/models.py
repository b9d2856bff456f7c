from dataclasses import dataclass, field


@dataclass(frozen=True)
class Principal:
    """已注册的唯一用户

    只保存在内存中, 不写入存储.
    """

    username: str
    secret: str = field(repr=False)
    is_admin: bool = False

