#!/usr/bin/env python3
"""
pyTestDB 根目录入口点

代理到 pyTestDB 包中的主模块。

使用方式:
    python main.py build [options]
    python main.py list [options]
    python main.py purge [options]
    python main.py serve [options]

或者使用包方式:
    python -m pyTestDB build [options]
"""

from pyTestDB.main import main

if __name__ == "__main__":
    main()
